"""Tests for the big-endian word codec."""

import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from codec import CodecError, decode, encode, read_bytecode, write_bytecode
from opcodes import WORD_MAX, WORD_MIN


class TestCodec(unittest.TestCase):

    def test_encode_is_big_endian_eight_bytes_per_word(self):
        self.assertEqual(encode([1]), b"\x00\x00\x00\x00\x00\x00\x00\x01")
        self.assertEqual(encode([-1]), b"\xff" * 8)
        self.assertEqual(encode([0x0102030405060708]), bytes(range(1, 9)))

    def test_encode_length(self):
        self.assertEqual(len(encode([1, 2, 3])), 24)
        self.assertEqual(encode([]), b"")

    def test_round_trip(self):
        words = [0, 1, -1, 42, WORD_MAX, WORD_MIN, 3, -7000]
        self.assertEqual(decode(encode(words)), words)

    def test_decode_returns_python_ints(self):
        for word in decode(encode([5, -5])):
            self.assertIs(type(word), int)

    def test_decode_rejects_partial_words(self):
        for size in (1, 7, 9, 15):
            with self.subTest(size=size):
                with self.assertRaises(CodecError):
                    decode(b"\x00" * size)

    def test_encode_rejects_out_of_range(self):
        with self.assertRaises(CodecError):
            encode([WORD_MAX + 1])
        with self.assertRaises(CodecError):
            encode([WORD_MIN - 1])

    def test_encode_rejects_non_integers(self):
        for bad in (1.5, "1", None, True):
            with self.subTest(bad=bad):
                with self.assertRaises(CodecError):
                    encode([bad])

    def test_file_round_trip(self):
        words = [1, 6, 1, 4, 20, 7, 3]
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bytecode")
            write_bytecode(path, words)
            self.assertEqual(os.path.getsize(path), 8 * len(words))
            self.assertEqual(read_bytecode(path), words)

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(CodecError):
                read_bytecode(os.path.join(tmp, "nope"))

    def test_truncated_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bytecode")
            with open(path, "wb") as handle:
                handle.write(encode([1, 2]) + b"\x00\x01")
            with self.assertRaises(CodecError):
                read_bytecode(path)


if __name__ == "__main__":
    unittest.main()
