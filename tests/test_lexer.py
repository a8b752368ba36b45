"""Tests for line tokenization."""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from lexer import AssemblyError, Lexer
from opcodes import ADD, PUSH, WORD_MAX, WORD_MIN


def tokenize(source):
    return Lexer(source, "<test>").tokenize()


class TestLexer(unittest.TestCase):

    def test_blank_and_comment_lines_produce_nothing(self):
        self.assertEqual(tokenize("\n   \n;; a comment\n\t;;another\n"), [])

    def test_instruction_without_operand(self):
        tokens = tokenize("add")
        self.assertEqual(len(tokens), 1)
        self.assertEqual(tokens[0].type, "INSTRUCTION")
        self.assertEqual(tokens[0].value, ADD)
        self.assertEqual(tokens[0].name, "add")

    def test_mnemonics_are_case_insensitive(self):
        tokens = tokenize("PuSh 5\nADD")
        self.assertEqual([t.value for t in tokens], [PUSH, 5, ADD])

    def test_operand_literal_and_label_reference(self):
        tokens = tokenize("push -12\njmp :start")
        self.assertEqual([t.type for t in tokens], ["INSTRUCTION", "VALUE", "INSTRUCTION", "LABEL"])
        self.assertEqual(tokens[1].value, -12)
        self.assertEqual(tokens[3].value, ":start")

    def test_constant_definition(self):
        tokens = tokenize(":answer 42")
        self.assertEqual(len(tokens), 1)
        self.assertEqual(tokens[0].type, "CONSTANT")
        self.assertEqual(tokens[0].name, ":answer")
        self.assertEqual(tokens[0].value, 42)

    def test_function_label(self):
        tokens = tokenize("  :main")
        self.assertEqual(tokens[0].type, "FUNCTION_LABEL")
        self.assertEqual(tokens[0].name, ":main")
        self.assertEqual(tokens[0].column, 3)

    def test_positions_are_tracked(self):
        tokens = tokenize("\n\n   push    7")
        self.assertEqual((tokens[0].line, tokens[0].column), (3, 4))
        self.assertEqual((tokens[1].line, tokens[1].column), (3, 12))

    def test_trailing_tokens_are_ignored(self):
        tokens = tokenize("push 1 ;; one\nadd ;; sum")
        self.assertEqual([t.value for t in tokens], [PUSH, 1, ADD])

    def test_word_range_limits(self):
        tokens = tokenize(f"push {WORD_MAX}\npush {WORD_MIN}")
        self.assertEqual(tokens[1].value, WORD_MAX)
        self.assertEqual(tokens[3].value, WORD_MIN)

    def test_invalid_mnemonic(self):
        with self.assertRaises(AssemblyError) as ctx:
            tokenize("push 1\nfrobnicate")
        self.assertIn("frobnicate", str(ctx.exception))
        self.assertIn("<test>:2:1", str(ctx.exception))

    def test_missing_operand(self):
        with self.assertRaises(AssemblyError) as ctx:
            tokenize("push")
        self.assertIn("No token present", str(ctx.exception))

    def test_non_integer_operand(self):
        for source in ("push abc", "push 1.5", "load 0x10", "store 1_000"):
            with self.subTest(source=source):
                with self.assertRaises(AssemblyError):
                    tokenize(source)

    def test_non_integer_constant(self):
        with self.assertRaises(AssemblyError) as ctx:
            tokenize(":x seven")
        self.assertIn("Label argument was not number", str(ctx.exception))

    def test_literal_out_of_word_range(self):
        with self.assertRaises(AssemblyError):
            tokenize(f"push {WORD_MAX + 1}")
        with self.assertRaises(AssemblyError):
            tokenize(f":big {WORD_MIN - 1}")


if __name__ == "__main__":
    unittest.main()
