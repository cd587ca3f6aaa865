from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np


@dataclass(frozen=True)
class RNGState:
    """
    Snapshot of a numpy bit generator.

    `stream_id` identifies the skip-ahead stream the state belongs to
    (None for the single shared stream of a sequential run).
    """

    bit_generator: str
    state: dict[str, Any]
    stream_id: Optional[int] = None


def make_generator(seed: int) -> np.random.Generator:
    return np.random.Generator(np.random.PCG64(int(seed)))


def capture_state(rng: np.random.Generator, *, stream_id: Optional[int] = None) -> RNGState:
    # Reading bit_generator.state does not advance the generator.
    bg = rng.bit_generator
    return RNGState(
        bit_generator=type(bg).__name__,
        state=copy.deepcopy(bg.state),
        stream_id=stream_id,
    )


def restore_state(state: RNGState) -> np.random.Generator:
    """Return a fresh generator whose next draws replay those after `state` was captured."""
    try:
        bg_cls = getattr(np.random, state.bit_generator)
    except AttributeError as e:
        raise ValueError(f"Unknown bit generator: {state.bit_generator}") from e
    bg = bg_cls()
    bg.state = copy.deepcopy(state.state)
    return np.random.Generator(bg)


def stream_for_replicate(seed: int, stream_id: int) -> np.random.Generator:
    """
    Independent stream `stream_id` derived from the master seed.

    Stream k is the master PCG64 stream jumped k + 1 times; each jump moves
    the state ahead by roughly 2**127 draws, so streams never overlap.
    """
    if int(stream_id) < 0:
        raise ValueError(f"stream_id must be non-negative, got {stream_id}")
    bg = np.random.PCG64(int(seed)).jumped(int(stream_id) + 1)
    return np.random.Generator(bg)


def spawn_worker_streams(seed: int, n_streams: int, *, start: int = 0) -> list[RNGState]:
    """Initial states of streams start .. start + n_streams - 1."""
    if int(n_streams) < 1:
        raise ValueError(f"n_streams must be >= 1, got {n_streams}")
    first = int(start)
    return [
        capture_state(stream_for_replicate(seed, k), stream_id=k) for k in range(first, first + int(n_streams))
    ]


def state_to_dict(state: RNGState) -> dict[str, Any]:
    return {
        "bit_generator": state.bit_generator,
        "stream_id": state.stream_id,
        # PCG64 state/inc are 128-bit integers; keep them as strings for JSON.
        "state": _stringify_ints(state.state),
    }


def state_from_dict(raw: dict[str, Any]) -> RNGState:
    stream_id = raw.get("stream_id")
    return RNGState(
        bit_generator=str(raw["bit_generator"]),
        state=_parse_ints(raw["state"]),
        stream_id=int(stream_id) if stream_id is not None else None,
    )


_INT_KEYS = {"state", "inc", "uinteger"}


def _stringify_ints(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: (str(v) if k in _INT_KEYS and isinstance(v, int) else _stringify_ints(v)) for k, v in obj.items()}
    return obj


def _parse_ints(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: (int(v) if k in _INT_KEYS and isinstance(v, str) else _parse_ints(v)) for k, v in obj.items()}
    return obj
