import json
import math
from typing import Any, Sequence
import numpy as np
from medsense.core.errors import VectorValidationError


def parse_embedding(value: Any) -> list[float]:
    """
    Coerces a stored embedding into a list of floats.
    Accepts lists, tuples, numpy arrays and string-encoded arrays such as
    "[0.1, 0.2]" (JSON) or "{0.1,0.2}" / "(0.1,0.2)" (database literals).
    """
    if isinstance(value, str):
        raw = value.strip()
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            inner = raw.strip("[](){}")
            if not inner.strip():
                value = []
            else:
                try:
                    value = [float(part) for part in inner.split(",")]
                except ValueError as e:
                    raise VectorValidationError(f"Embedding string is not a numeric array: {raw[:40]!r}") from e

    if isinstance(value, np.ndarray):
        value = value.tolist()

    if not isinstance(value, (list, tuple)):
        raise VectorValidationError(f"Embedding must be an array, got {type(value).__name__}")

    result = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float, np.integer, np.floating)):
            raise VectorValidationError(f"Embedding contains a non-numeric value: {item!r}")
        number = float(item)
        if not math.isfinite(number):
            raise VectorValidationError("Embedding contains a non-finite value")
        result.append(number)
    return result


def _as_vector(values: Sequence[float], name: str) -> np.ndarray:
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise VectorValidationError(f"Vector '{name}' is not numeric") from e
    if vector.ndim != 1:
        raise VectorValidationError(f"Vector '{name}' must be one-dimensional")
    if not np.all(np.isfinite(vector)):
        raise VectorValidationError(f"Vector '{name}' contains non-finite values")
    return vector


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. A zero vector has similarity 0 with everything."""
    va = _as_vector(a, "a")
    vb = _as_vector(b, "b")
    if va.shape != vb.shape:
        raise VectorValidationError(f"Vector lengths differ: {va.shape[0]} != {vb.shape[0]}")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding error can push identical vectors just past 1.0
    return max(-1.0, min(1.0, similarity))
