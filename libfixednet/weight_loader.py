"""Address-mapped parameter loading for a ``Network``.

Every parameter tensor of the network is laid out back to back in one flat
word address space, in ``Network.parameters()`` order (row-major within a
tensor).  Loading follows a simple bus protocol:

- ``start()`` opens a session and clears both status flags;
- ``write(address, data, write_enable)`` stores one W-bit word;
- ``load_done`` rises once every address has been written in the session;
- ``load_error`` rises on any protocol violation (bad address, data outside
  the W-bit range, write outside a session) and stays up until the next
  ``start()``.

Faults are reported through the flags, never by raising; ``check()`` turns
a raised ``load_error`` into a ``RuntimeError`` for callers that prefer
exceptions.  Gating ``valid_in`` until ``load_done`` is the caller's job:
the pipeline does not look at these flags.
"""

import bisect
import sys
import warnings
from typing import Dict, List, Optional, Tuple

import numpy as np

from .fixed_point import QFormat

__all__ = ["WeightLoader"]


class WeightLoader:
    """Populates a network's parameter storage through a flat address map.

    Args:
        network: Any object exposing ``fmt`` and ``parameters()`` (an
            ordered ``name -> int64 ndarray`` mapping of live storage).
        verbose: Print session start/finish and faults to stderr.
    """

    def __init__(self, network, verbose: bool = False) -> None:
        self.fmt: QFormat = network.fmt
        self._verbose = verbose
        self._names: List[str] = []
        self._bases: List[int] = []
        self._views: List[np.ndarray] = []
        address = 0
        for name, array in network.parameters().items():
            view = array.reshape(-1)
            if not np.shares_memory(view, array):
                raise ValueError(f"Parameter {name} is not contiguous storage")
            self._names.append(name)
            self._bases.append(address)
            self._views.append(view)
            address += view.size
        self.depth = address

        self._written = np.zeros(self.depth, dtype=bool)
        self._active = False
        self.load_done = False
        self.load_error = False
        self.error_reason: Optional[str] = None

    # ── Address map ───────────────────────────────────────────────────────

    @property
    def names(self) -> List[str]:
        return list(self._names)

    def span_of(self, name: str) -> Tuple[int, int]:
        """``(base_address, word_count)`` of a named tensor."""
        try:
            i = self._names.index(name)
        except ValueError:
            raise KeyError(f"No parameter named {name!r}") from None
        return self._bases[i], self._views[i].size

    def address_of(self, name: str) -> int:
        return self.span_of(name)[0]

    def address_map(self) -> Dict[str, Tuple[int, int]]:
        return {name: self.span_of(name) for name in self._names}

    # ── Bus protocol ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Open a load session; clears ``load_done`` and ``load_error``."""
        if self._active and not self.load_done:
            warnings.warn(
                f"Load session restarted with {int(self._written.sum())}/{self.depth} "
                f"words written"
            )
        self._written[:] = False
        self._active = True
        self.load_done = False
        self.load_error = False
        self.error_reason = None
        if self._verbose:
            print(f"[libfixednet] load start: {self.depth} words", file=sys.stderr)

    def write(self, address: int, data: int, write_enable: bool = True) -> None:
        """Store one word.  Ignored while ``write_enable`` is low."""
        if not write_enable:
            return
        self.write_burst(address, [data])

    def write_burst(self, address: int, words) -> None:
        """Store ``words`` at consecutive addresses starting at ``address``."""
        words = np.asarray(words).reshape(-1)
        if not self._active:
            self._fault("write outside a load session")
            return
        if address < 0 or address + words.size > self.depth:
            self._fault(f"address range [{address}, {address + words.size}) outside "
                        f"[0, {self.depth})")
            return
        if words.size == 0:
            return
        if not np.issubdtype(words.dtype, np.integer):
            self._fault(f"non-integer data of dtype {words.dtype}")
            return
        if words.min() < self.fmt.min_value or words.max() > self.fmt.max_value:
            self._fault(f"data outside [{self.fmt.min_value}, {self.fmt.max_value}]")
            return

        end = address + words.size
        i = bisect.bisect_right(self._bases, address) - 1
        cursor = address
        while cursor < end:
            base, view = self._bases[i], self._views[i]
            stop = min(end, base + view.size)
            view[cursor - base:stop - base] = words[cursor - address:stop - address]
            cursor = stop
            i += 1
        self._written[address:end] = True

        if self._written.all():
            self.load_done = True
            self._active = False
            if self._verbose:
                print("[libfixednet] load done", file=sys.stderr)

    def _fault(self, reason: str) -> None:
        self.load_error = True
        self.error_reason = reason
        if self._verbose:
            print(f"[libfixednet] load error: {reason}", file=sys.stderr)

    def check(self) -> None:
        """Raise ``RuntimeError`` if the current session has faulted."""
        if self.load_error:
            raise RuntimeError(f"Weight load failed: {self.error_reason}")

    # ── Convenience ───────────────────────────────────────────────────────

    def load_array(self, name: str, values) -> None:
        """Burst-write one named tensor (row-major) in the current session."""
        base, size = self.span_of(name)
        values = np.asarray(values)
        if values.size != size:
            self._fault(f"{name}: expected {size} words, got {values.size}")
            return
        self.write_burst(base, values)

    def load_parameters(self, mapping: Dict[str, np.ndarray]) -> bool:
        """Start a session, write every tensor in ``mapping`` and report ``load_done``."""
        self.start()
        for name, values in mapping.items():
            self.load_array(name, values)
        return self.load_done
