#!/usr/bin/env python3
"""Streaming inference example: fixed-point MobileNetV3-Small pipeline.

Builds the network, quantizes a set of random float parameters (batch-norm
statistics folded offline), pushes them through the address-mapped weight
loader and then streams random images through the pipeline, one per tick.
Reports the pipeline latency, the top-5 classes of every image and the
saturation monitor.

Requirements: numpy only
"""

import argparse
import time

import numpy as np

from libfixednet import BlockConfig, Network, NetworkConfig, QFormat, WeightLoader
from libfixednet._quantize import fuse_batchnorm, to_fixed


def parse_args():
    parser = argparse.ArgumentParser(
        description="Fixed-point MobileNetV3-Small streaming inference")
    parser.add_argument("--images", type=int, default=4,
                        help="Number of random images to stream (default: 4)")
    parser.add_argument("--small", action="store_true",
                        help="Use a reduced 32x32 network instead of the full 224x224 one")
    parser.add_argument("--width", type=int, default=8,
                        help="Total bits per value W (default: 8)")
    parser.add_argument("--frac-bits", type=int, default=4,
                        help="Fractional bits F (default: 4)")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed (default: 42)")
    parser.add_argument("--verbose", action="store_true",
                        help="Trace every stage output to stderr")
    return parser.parse_args()


def build_config(args):
    fmt = QFormat(args.width, args.frac_bits)
    if not args.small:
        return NetworkConfig(fmt=fmt)
    return NetworkConfig(
        input_size=32,
        stem_channels=16,
        blocks=(
            BlockConfig(3, 16, 16, True, "relu", 2),
            BlockConfig(3, 72, 24, False, "relu", 2),
            BlockConfig(3, 88, 24, False, "relu", 1),
            BlockConfig(5, 96, 40, True, "hswish", 2),
        ),
        last_channels=96,
        hidden_features=128,
        num_classes=100,
        fmt=fmt,
    )


def random_parameters(net, rng):
    """Quantized random parameters: small conv/linear weights, folded BN."""
    fmt = net.fmt
    params = {}
    names = list(net.parameters())
    for name, array in net.parameters().items():
        if name.endswith("effective_bias"):
            continue
        if name.endswith("effective_weight"):
            channels = array.shape[0]
            prefix = name[:-len("effective_weight")]
            weight, bias = fuse_batchnorm(
                gamma=rng.uniform(0.8, 1.2, channels),
                beta=rng.normal(0.0, 0.1, channels),
                mean=rng.normal(0.0, 0.1, channels),
                var=rng.uniform(0.5, 1.5, channels),
                fmt=fmt,
            )
            params[name] = weight
            params[prefix + "effective_bias"] = bias
        else:
            fan_in = array[0].size if array.ndim > 1 else 1
            scale = 1.0 / np.sqrt(fan_in)
            params[name] = to_fixed(rng.normal(0.0, scale, array.shape), fmt)
    return {name: params[name] for name in names}


def main():
    args = parse_args()
    rng = np.random.default_rng(args.seed)

    config = build_config(args)
    net = Network(config, verbose=args.verbose)
    fmt = net.fmt
    print(f"Network: {config.input_size}x{config.input_size}x{config.in_channels} -> "
          f"{config.num_classes} classes, Q({fmt.width},{fmt.frac_bits})")
    print(f"  Blocks:   {len(net.blocks)}")
    print(f"  Latency:  {net.latency} ticks")

    loader = WeightLoader(net, verbose=args.verbose)
    print(f"  Weights:  {loader.depth} words")
    t0 = time.perf_counter()
    done = loader.load_parameters(random_parameters(net, rng))
    loader.check()
    print(f"  Load:     done={done} in {(time.perf_counter() - t0) * 1000:.1f} ms")

    size = config.input_size
    images = [to_fixed(rng.uniform(-1.0, 1.0, (size, size, config.in_channels)), fmt)
              for _ in range(args.images)]

    print(f"\nStreaming {len(images)} images:")
    t0 = time.perf_counter()
    for i, scores in enumerate(net.stream(images)):
        top5 = np.argsort(scores)[::-1][:5]
        print(f"  [{i}] top-5: {top5.tolist()}  scores: {scores[top5].tolist()}")
    elapsed = time.perf_counter() - t0

    print(f"\nTicks:       {net.tick_count} ({elapsed:.2f} s)")
    print(f"Saturations: {net.monitor.count}", end="")
    if net.monitor.last_stage is not None:
        print(f" (last in {net.monitor.last_stage})", end="")
    print()


if __name__ == "__main__":
    main()
