from __future__ import annotations
import numbers
from typing import Iterable, List

import numpy as np

from lexer import StackVMError
from opcodes import WORD_DTYPE, WORD_SIZE, in_word_range


class CodecError(StackVMError):
    """Raised when words cannot be encoded or bytes cannot be decoded."""


def as_word(value: object, index: int) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise CodecError(f"Word {index} is not an integer: {value!r}")
    word = int(value)
    if not in_word_range(word):
        raise CodecError(f"Word {index} does not fit in 64 bits: {word}")
    return word


def encode(words: Iterable[int]) -> bytes:
    """Serialize words as consecutive 8-byte big-endian integers.

    There is no header, padding or length prefix; the output is exactly
    ``8 * len(words)`` bytes.
    """
    checked = [as_word(word, index) for index, word in enumerate(words)]
    return np.array(checked, dtype=WORD_DTYPE).tobytes()


def decode(data: bytes) -> List[int]:
    if len(data) % WORD_SIZE != 0:
        raise CodecError(f"Bytecode length {len(data)} is not a multiple of the {WORD_SIZE}-byte word size")
    # tolist() hands back plain Python ints rather than numpy scalars.
    return np.frombuffer(data, dtype=WORD_DTYPE).tolist()


def write_bytecode(path: str, words: Iterable[int]) -> None:
    data = encode(words)
    try:
        with open(path, "wb") as handle:
            handle.write(data)
            handle.flush()
    except OSError as exc:
        raise CodecError(f"Unable to write bytecode to {path}: {exc}") from exc


def read_bytecode(path: str) -> List[int]:
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise CodecError(f"Could not open bytecode file {path}: {exc}") from exc
    return decode(data)
