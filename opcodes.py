from __future__ import annotations
from typing import Dict, FrozenSet

import numpy as np


# One machine word: signed 64-bit, big-endian when serialized.
WORD_DTYPE = np.dtype(">i8")
WORD_SIZE = WORD_DTYPE.itemsize
WORD_MIN = int(np.iinfo(np.int64).min)
WORD_MAX = int(np.iinfo(np.int64).max)

PUSH = 1
HALT = 3
ADD = 4
SUB = 5
MUL = 6
DIV = 7
NOT = 8
AND = 9
OR = 10
POP = 11
DUP = 12
ISEQ = 13
ISGT = 14
ISGE = 15
JMP = 16
JIF = 17
LOAD = 18
STORE = 19
CALL = 20
RET = 21
PRNSTK = 22

TRUE = 1
FALSE = 0

# Mnemonics are matched case-insensitively; keys are lower-case.
MNEMONICS: Dict[str, int] = {
    "push": PUSH,
    "add": ADD,
    "halt": HALT,
    "sub": SUB,
    "mul": MUL,
    "div": DIV,
    "not": NOT,
    "and": AND,
    "or": OR,
    "pop": POP,
    "dup": DUP,
    "iseq": ISEQ,
    "isgt": ISGT,
    "isge": ISGE,
    "jmp": JMP,
    "jif": JIF,
    "load": LOAD,
    "store": STORE,
    "call": CALL,
    "ret": RET,
    "prnstk": PRNSTK,
}

# Opcodes followed by exactly one immediate operand word.
OPERAND_OPCODES: FrozenSet[int] = frozenset({PUSH, JMP, JIF, LOAD, STORE, CALL})

_NAMES: Dict[int, str] = {code: name.upper() for name, code in MNEMONICS.items()}


def opcode_name(word: int) -> str:
    return _NAMES.get(word, f"<invalid {word}>")


def takes_operand(opcode: int) -> bool:
    return opcode in OPERAND_OPCODES


def in_word_range(value: int) -> bool:
    return WORD_MIN <= value <= WORD_MAX
