from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List

from lexer import AssemblyError, Lexer, Token


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class SymbolTable:
    values: Dict[str, int] = field(default_factory=dict)
    locations: Dict[str, SourceLocation] = field(default_factory=dict)

    def define(self, name: str, value: int, location: SourceLocation) -> None:
        previous = self.locations.get(name)
        if previous is not None:
            raise AssemblyError(
                f"Symbol {name} already defined at {previous.file}:{previous.line} "
                f"(redefined at {location.file}:{location.line})"
            )
        self.values[name] = value
        self.locations[name] = location

    def resolve(self, name: str, location: SourceLocation) -> int:
        if name not in self.values:
            raise AssemblyError(f"Used undeclared constant {name} at {location.file}:{location.line}:{location.column}")
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values


@dataclass
class AssembledProgram:
    words: List[int]
    symbols: Dict[str, int]
    labels: Dict[str, int]
    # address of each opcode word -> the line that produced it
    source_map: Dict[int, SourceLocation]


class Assembler:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.symbols = SymbolTable()
        self.labels: Dict[str, int] = {}

    def assemble(self) -> AssembledProgram:
        stream = self._extract_constants(self.tokens)
        stream = self._resolve_code_labels(stream)
        stream = self._resolve_references(stream)
        words = self._flatten(stream)
        source_map = {
            address: self._location_from_token(token)
            for address, token in enumerate(stream)
            if token.type == "INSTRUCTION"
        }
        return AssembledProgram(
            words=words,
            symbols=dict(self.symbols.values),
            labels=dict(self.labels),
            source_map=source_map,
        )

    def _extract_constants(self, stream: List[Token]) -> List[Token]:
        remaining: List[Token] = []
        for token in stream:
            if token.type == "CONSTANT":
                assert token.name is not None and isinstance(token.value, int)
                self.symbols.define(token.name, token.value, self._location_from_token(token))
            else:
                remaining.append(token)
        return remaining

    def _resolve_code_labels(self, stream: List[Token]) -> List[Token]:
        # Labels are zero-width: they bind to the address of the next emitted word.
        remaining: List[Token] = []
        address = 0
        for token in stream:
            if token.type == "FUNCTION_LABEL":
                assert token.name is not None
                self.symbols.define(token.name, address, self._location_from_token(token))
                self.labels[token.name] = address
                continue
            remaining.append(token)
            address += 1
        return remaining

    def _resolve_references(self, stream: List[Token]) -> List[Token]:
        resolved: List[Token] = []
        for token in stream:
            if token.type in ("CONSTANT", "FUNCTION_LABEL"):
                raise AssemblyError(f"Invalid value leaked through {token!r}")
            if token.type == "LABEL":
                assert isinstance(token.value, str)
                value = self.symbols.resolve(token.value, self._location_from_token(token))
                resolved.append(Token("VALUE", value, token.line, token.column))
                continue
            resolved.append(token)
        return resolved

    def _flatten(self, stream: List[Token]) -> List[int]:
        out: List[int] = []
        for token in stream:
            if token.type not in ("INSTRUCTION", "VALUE"):
                raise AssemblyError(f"Invalid value leaked through {token!r}")
            assert isinstance(token.value, int)
            out.append(token.value)
        return out

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_text = self.source_lines[token.line - 1] if 0 < token.line <= len(self.source_lines) else ""
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=line_text.strip())


def assemble_program(source: str, filename: str = "<string>") -> AssembledProgram:
    tokens = Lexer(source, filename).tokenize()
    return Assembler(tokens, filename, source.splitlines()).assemble()


def assemble(source: str, filename: str = "<string>") -> List[int]:
    """Assemble source text into the flat word stream the machine executes."""
    return assemble_program(source, filename).words
