"""Base classes for clocked pipeline components.

Every engine in the package is a synchronous, fixed-latency pipeline.  A
component holds ``latency`` registers, each carrying a ``(valid, data)``
token.  One call to ``step()`` is one clock tick:

1. the value currently on the output port (the last register, sampled
   before the clock edge) is returned;
2. every register then latches the result of its stage function applied to
   the register (or input port) before it.

A valid input passed to ``step()`` on tick ``t`` therefore comes back from
the ``step()`` call on tick ``t + latency``, exactly once.  Stage functions
only run on valid tokens, so idle stages cost nothing.

``ready`` is always ``True``: there is no backpressure, a new token may be
accepted on every tick and is never stalled or buffered.

A tick in which any stage raises commits nothing: the component is left
exactly as it was before the call.
"""

from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

__all__ = ["Token", "PipelineComponent", "StagedPipeline", "DelayLine", "Chain"]

Token = Tuple[bool, object]

_EMPTY: Token = (False, None)


class PipelineComponent:
    """Interface shared by all clocked components.

    Subclasses implement ``step``, ``reset``, ``latency`` and ``in_flight``.
    """

    name: str = ""

    @property
    def latency(self) -> int:
        raise NotImplementedError

    @property
    def ready(self) -> bool:
        """Input-side ready signal.  Always asserted (no backpressure)."""
        return True

    @property
    def in_flight(self) -> int:
        """Number of valid tokens currently held in registers."""
        raise NotImplementedError

    def step(self, valid_in: bool, data_in=None) -> Token:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError

    def snapshot(self):
        """Copy of the register state, for ``restore``."""
        raise NotImplementedError

    def restore(self, state) -> None:
        raise NotImplementedError

    def __call__(self, data_in):
        """Run one token through an otherwise idle component.

        Convenience for unit use: accepts ``data_in``, ticks ``latency``
        more times and returns the matching output.  Tokens already in
        flight are discarded.
        """
        valid, data = self.step(True, data_in)
        for _ in range(self.latency):
            valid, data = self.step(False)
        if not valid:
            raise RuntimeError(f"{self.name or type(self).__name__}: no output "
                               f"after {self.latency} ticks")
        return data


class StagedPipeline(PipelineComponent):
    """Linear pipeline of stage functions, one register per stage.

    Args:
        stages: Stage functions ``f_i(data) -> data``.  ``f_0`` consumes the
            input port, ``f_i`` consumes register ``i - 1``.  An empty list
            yields a zero-latency pass-through.
        name: Label used in diagnostics.
    """

    def __init__(self, stages: Sequence[Callable], name: str = "") -> None:
        self._stages = list(stages)
        self._regs: List[Token] = [_EMPTY] * len(self._stages)
        self.name = name

    @property
    def latency(self) -> int:
        return len(self._stages)

    @property
    def in_flight(self) -> int:
        return sum(1 for valid, _ in self._regs if valid)

    def step(self, valid_in: bool, data_in=None) -> Token:
        if not self._stages:
            return (True, data_in) if valid_in else _EMPTY

        # Build the next register state first: a stage that raises leaves the
        # pipeline exactly as it was before the tick.
        regs = [(True, self._stages[0](data_in)) if valid_in else _EMPTY]
        for stage, (valid, data) in zip(self._stages[1:], self._regs[:-1]):
            regs.append((True, stage(data)) if valid else _EMPTY)
        out = self._regs[-1]
        self._regs = regs
        return out

    def reset(self) -> None:
        self._regs = [_EMPTY] * len(self._stages)

    def snapshot(self):
        return list(self._regs)

    def restore(self, state) -> None:
        self._regs = list(state)


class DelayLine(StagedPipeline):
    """Shift register that delays tokens by ``depth`` ticks unchanged.

    Arrays are copied on accept, so the caller may reuse its buffer while
    the token is in flight.
    """

    def __init__(self, depth: int, name: str = "") -> None:
        if depth < 0:
            raise ValueError(f"depth must be >= 0, got {depth}")
        stages = [_copy] + [_identity] * (depth - 1) if depth else []
        super().__init__(stages, name=name)


def _identity(data):
    return data


def _copy(data):
    return data.copy() if isinstance(data, np.ndarray) else data


class Chain(PipelineComponent):
    """Sequential composition: each component feeds the next every tick.

    Latency is the sum of the member latencies.  An optional ``observer``
    is called as ``observer(name, data)`` for every valid token leaving a
    member, which is how overflow monitoring and verbose tracing hook in.
    """

    def __init__(self, components: Sequence[PipelineComponent], name: str = "",
                 observer: Optional[Callable[[str, object], None]] = None) -> None:
        self._components = list(components)
        self.name = name
        self.observer = observer

    @property
    def components(self) -> List[PipelineComponent]:
        return list(self._components)

    @property
    def latency(self) -> int:
        return sum(c.latency for c in self._components)

    @property
    def in_flight(self) -> int:
        return sum(c.in_flight for c in self._components)

    def step(self, valid_in: bool, data_in=None) -> Token:
        """Clock every member once.

        If any member raises, all members are rolled back to their state
        before the tick and the observer is not called.
        """
        state = self.snapshot()
        emitted = []
        valid, data = valid_in, data_in
        try:
            for component in self._components:
                valid, data = component.step(valid, data)
                if valid:
                    emitted.append((component.name, data))
        except Exception:
            self.restore(state)
            raise
        if self.observer is not None:
            for name, value in emitted:
                self.observer(name, value)
        return valid, data

    def reset(self) -> None:
        for component in self._components:
            component.reset()

    def snapshot(self):
        return [component.snapshot() for component in self._components]

    def restore(self, state) -> None:
        for component, saved in zip(self._components, state):
            component.restore(saved)
