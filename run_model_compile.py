"""Compile a toy decoder ahead of time and generate with it.

Writes a small model directory (random weights) with compilation
enabled, then loads it three times:

  1. clean directory: the artifact is compiled into contexts/
  2. same options: the cached artifact is validated and reused
  3. forced rejection: the backend's verdict is overridden to
     NOT_SUPPORTED, so the artifact is recompiled in place

and finally runs greedy generation against the compiled model.
"""

import argparse
import logging
import tempfile
import time
from pathlib import Path

import numpy as np

from genrt.backends.base import CompatibilityVerdict
from genrt.backends.numpy_backend import NumpyBackend
from genrt.builders import write_decoder_model
from genrt.env import init_environment
from genrt.generator import Generator, GeneratorParams
from genrt.ir import Graph, read_metadata
from genrt.model import create_model


class CountingBackend(NumpyBackend):
    """Numpy backend that counts compiles and can be told to reject artifacts."""

    def __init__(self, verbose=False):
        super().__init__(verbose=verbose)
        self.compiles = 0
        self.reject = False

    def compile(self, directives):
        self.compiles += 1
        return super().compile(directives)

    def get_compatibility(self, info, devices):
        if self.reject:
            return CompatibilityVerdict.NOT_SUPPORTED
        return super().get_compatibility(info, devices)


def load(model_dir: Path, backend: CountingBackend, label: str):
    before = backend.compiles
    t0 = time.perf_counter()
    model = create_model(model_dir, backend=backend)
    elapsed_ms = (time.perf_counter() - t0) * 1000
    compiled = backend.compiles - before
    print(f"{label:<22} {elapsed_ms:7.1f}ms  compiles: {compiled}  -> {model.session.path.name}")
    return model


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--model-dir", type=Path, default=None,
                        help="where to write the model (default: a temp directory)")
    parser.add_argument("--max-length", type=int, default=16)
    parser.add_argument("--embed", action="store_true",
                        help="embed weights in the compiled artifact")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    init_environment(verbose=args.verbose)

    model_dir = args.model_dir or Path(tempfile.mkdtemp(prefix="genrt-"))
    write_decoder_model(
        model_dir,
        compile_options={"enable_ep_context": True, "ep_context_embed_mode": args.embed},
        max_length=args.max_length,
    )
    print(f"Model directory: {model_dir}")
    print(Graph.load(model_dir / "model.onnx").summary())
    print()

    # --- Compile / reuse / recompile ---
    backend = CountingBackend(verbose=args.verbose)
    load(model_dir, backend, "First load (clean)")
    load(model_dir, backend, "Second load (cached)")
    backend.reject = True
    load(model_dir, backend, "Third load (rejected)")
    backend.reject = False
    model = load(model_dir, backend, "Fourth load (cached)")

    artifact = model.session.path
    print()
    print(f"Artifact: {artifact}")
    for key, value in sorted(read_metadata(artifact).items()):
        print(f"  {key} = {value}")
    print(model.session.graph.summary())

    # --- Greedy generation ---
    params = GeneratorParams.from_config(model.config)
    generator = Generator(model, params)
    prompt_ids = np.array([[1, 2, 3]], dtype=np.int64)
    generator.append_tokens(prompt_ids)

    t0 = time.perf_counter()
    steps = 0
    while not generator.is_done():
        generator.generate_next_token()
        steps += 1
    elapsed = time.perf_counter() - t0
    print()
    print(f"Generated {steps} tokens in {elapsed * 1000:.1f}ms "
          f"({steps / elapsed:.0f} tok/s)")
    print(f"Sequence: {generator.get_sequence(0).tolist()}")


if __name__ == "__main__":
    main()
