from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Union

from opcodes import MNEMONICS, in_word_range, takes_operand


class StackVMError(Exception):
    """Base class for assembler, codec and machine errors."""


class AssemblyError(StackVMError):
    """Raised when assembling source text fails."""


@dataclass
class Token:
    type: str
    value: Union[int, str]
    line: int
    column: int
    name: Optional[str] = None


LABEL_MARKER = ":"
COMMENT_MARKER = ";;"

_WORD_RE = re.compile(r"[^\s]+")
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def is_label(text: str) -> bool:
    return text.startswith(LABEL_MARKER)


def is_comment(text: str) -> bool:
    return text.startswith(COMMENT_MARKER)


class Lexer:
    """Turns assembly source into a flat token stream, one line at a time.

    Each line yields zero or more tokens:

    * blank and comment lines yield nothing
    * ``:NAME 42`` yields a CONSTANT token
    * ``:NAME`` alone yields a FUNCTION_LABEL token
    * an instruction yields an INSTRUCTION token, followed by a VALUE or
      LABEL token when the mnemonic takes an operand

    Tokens after the ones a line needs are ignored, which is what lets a
    trailing ``;;`` comment sit after an instruction.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        for line_no, line in enumerate(self.text.splitlines(), start=1):
            tokens.extend(self._tokenize_line(line, line_no))
        return tokens

    def _tokenize_line(self, line: str, line_no: int) -> List[Token]:
        words: Iterator[re.Match[str]] = _WORD_RE.finditer(line)
        first = next(words, None)
        if first is None:
            return []
        word = first.group(0)
        column = first.start() + 1

        # Definitions are checked before comments.
        if is_label(word):
            argument = next(words, None)
            if argument is None:
                return [Token("FUNCTION_LABEL", word, line_no, column, name=word)]
            value = self._parse_integer(argument.group(0), line_no, argument.start() + 1, "Label argument was not number")
            return [Token("CONSTANT", value, line_no, column, name=word)]

        if is_comment(word):
            return []

        mnemonic = word.lower()
        opcode = MNEMONICS.get(mnemonic)
        if opcode is None:
            raise AssemblyError(f"Received invalid instruction {word} at {self._where(line_no, column)}")
        instruction = Token("INSTRUCTION", opcode, line_no, column, name=mnemonic)
        if not takes_operand(opcode):
            return [instruction]

        argument = next(words, None)
        if argument is None:
            raise AssemblyError(
                f"No token present when required: {mnemonic} expects an operand at {self._where(line_no, column)}"
            )
        return [instruction, self._operand_token(argument.group(0), line_no, argument.start() + 1)]

    def _operand_token(self, text: str, line_no: int, column: int) -> Token:
        if is_label(text):
            return Token("LABEL", text, line_no, column)
        return Token("VALUE", self._parse_integer(text, line_no, column, "Not number"), line_no, column)

    def _parse_integer(self, text: str, line_no: int, column: int, reason: str) -> int:
        if _INTEGER_RE.fullmatch(text) is None:
            raise AssemblyError(f"{reason}: '{text}' at {self._where(line_no, column)}")
        value = int(text)
        if not in_word_range(value):
            raise AssemblyError(f"Integer literal '{text}' does not fit in a 64-bit word at {self._where(line_no, column)}")
        return value

    def _where(self, line_no: int, column: int) -> str:
        return f"{self.filename}:{line_no}:{column}"
