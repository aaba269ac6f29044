"""Inference engines the resource host can own.

The host only needs three things from an engine: load a resource with
progress reports, run one job as a stream of output units, and say whether
it is loaded. How the numbers are crunched is the engine's business.
"""

import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Union

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

ECHO_SCHEME = "echo:"
READ_CHUNK_BYTES = 1024 * 1024


class InferenceEngine(Protocol):
    """Interface between the resource host and the engine it owns."""

    loaded: bool

    def init(self, resource_locator: str, progress_callback: ProgressCallback) -> None:
        """Load the resource, calling progress_callback with 0-100. Raises on failure."""
        ...

    def run(self, input: str, **params: Any) -> Iterator[Union[int, str]]:
        """Run one job, yielding output units (byte values or text). Raises on failure."""
        ...


class EchoEngine:
    """
    Deterministic engine for development and tests.

    Loading an `echo:<name>` locator reports progress in steps; any other
    locator is read as a local file, reporting progress as bytes are read.
    A job streams the input back as UTF-8 byte units.
    """

    def __init__(self, step_delay: float = 0.0):
        self.step_delay = step_delay
        self.loaded = False
        self.resource_locator: Optional[str] = None

    def init(self, resource_locator: str, progress_callback: ProgressCallback) -> None:
        if resource_locator.startswith(ECHO_SCHEME):
            for percent in (0, 25, 50, 75, 100):
                progress_callback(percent)
                if self.step_delay:
                    time.sleep(self.step_delay)
        else:
            self._read_file(Path(resource_locator), progress_callback)

        self.resource_locator = resource_locator
        self.loaded = True
        logger.info(f"Echo engine loaded: {resource_locator}")

    def _read_file(self, path: Path, progress_callback: ProgressCallback) -> None:
        if not path.is_file():
            raise FileNotFoundError(f"Resource not found: {path}")

        total = path.stat().st_size
        loaded = 0
        progress_callback(0)
        with open(path, "rb") as f:
            while True:
                block = f.read(READ_CHUNK_BYTES)
                if not block:
                    break
                loaded += len(block)
                progress_callback(round(loaded / total * 100) if total else 100)
                if self.step_delay:
                    time.sleep(self.step_delay)
        progress_callback(100)

    def run(self, input: str, **params: Any) -> Iterator[int]:
        if not self.loaded:
            raise RuntimeError("Echo engine has no resource loaded")
        yield from input.encode("utf-8")


class LlamaCppEngine:
    """GGUF models through llama-cpp-python (optional dependency)."""

    def __init__(self, n_ctx: int = 2048, n_threads: Optional[int] = None):
        self.n_ctx = n_ctx
        self.n_threads = n_threads
        self.loaded = False
        self._llm = None

    def init(self, resource_locator: str, progress_callback: ProgressCallback) -> None:
        from llama_cpp import Llama

        path = Path(resource_locator)
        if not path.is_file():
            raise FileNotFoundError(f"Model file not found: {path}")

        progress_callback(0)
        logger.info(f"Loading GGUF model: {path} (n_ctx={self.n_ctx})")
        self._llm = Llama(
            model_path=str(path),
            n_ctx=self.n_ctx,
            n_threads=self.n_threads,
            verbose=False,
        )
        self.loaded = True
        progress_callback(100)

    def run(
        self,
        input: str,
        max_tokens: int = 256,
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.9,
        **params: Any
    ) -> Iterator[str]:
        if not self.loaded or self._llm is None:
            raise RuntimeError("No model loaded")

        for part in self._llm.create_completion(
            input,
            max_tokens=max_tokens,
            temperature=temperature,
            top_k=top_k,
            top_p=top_p,
            stream=True,
        ):
            text = part["choices"][0].get("text", "")
            if text:
                yield text


ENGINES: Dict[str, Callable[[], InferenceEngine]] = {
    "echo": lambda: EchoEngine(step_delay=float(os.getenv("RELAY_ECHO_STEP_DELAY", "0"))),
    "llama_cpp": lambda: LlamaCppEngine(n_ctx=int(os.getenv("RELAY_N_CTX", "2048"))),
}


def create_engine(name: str) -> InferenceEngine:
    """
    Build an engine by name.

    Raises:
        ValueError: Unknown engine name
    """
    factory = ENGINES.get(name)
    if factory is None:
        raise ValueError(
            f"Unknown engine: {name}. Available engines: {', '.join(sorted(ENGINES))}"
        )
    return factory()
