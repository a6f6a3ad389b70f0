from __future__ import annotations

import re
import zlib
from pathlib import Path

import numpy as np
import pytest

from codex_context.config import DATA_DIR_ENV, Config
from codex_context.embedding import Embedder

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class HashingBackend:
    """Deterministic bag-of-words embeddings, no network involved."""

    def __init__(self, dim: int = 64) -> None:
        self.dim = dim
        self.calls: list[list[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        rows = []
        for text in texts:
            vector = np.zeros(self.dim, dtype=np.float32)
            for token in _TOKEN_RE.findall(text.lower()):
                vector[zlib.crc32(token.encode("utf-8")) % self.dim] += 1.0
            if not vector.any():
                vector[0] = 1.0
            rows.append(vector)
        return np.vstack(rows)


MATH_TS = """\
export function addNumbers(first: number, second: number): number {
  const total = first + second;
  console.log("adding numbers together", first, second, total);
  return total;
}

export function multiplyNumbers(first: number, second: number): number {
  const product = first * second;
  console.log("multiplying numbers together", first, second, product);
  return product;
}
"""

APP_TS = """\
import { addNumbers } from './math';

export class Calculator {
  private history: number[] = [];

  sum(first: number, second: number): number {
    const result = addNumbers(first, second);
    this.history.push(result);
    return result;
  }
}
"""

GREETER_JS = """\
function greetVisitor(name) {
  const message = "Hello, " + name + "! Welcome to the codex context demo page.";
  console.log(message);
  return message;
}

module.exports = { greetVisitor };
"""


@pytest.fixture
def data_home(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "data"
    monkeypatch.setenv(DATA_DIR_ENV, str(path))
    return path


@pytest.fixture
def fast_config() -> Config:
    return Config(upload_delay=0.0, extract_concurrency=1)


@pytest.fixture
def backend() -> HashingBackend:
    return HashingBackend()


@pytest.fixture
def embedder(backend) -> Embedder:
    return Embedder(backend, description="hashing test backend")


@pytest.fixture
def codebase(tmp_path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "math.ts").write_text(MATH_TS, encoding="utf-8")
    (root / "src" / "app.ts").write_text(APP_TS, encoding="utf-8")
    (root / "lib").mkdir()
    (root / "lib" / "greeter.js").write_text(GREETER_JS, encoding="utf-8")
    return root
