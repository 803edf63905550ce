"""
Tests for dgrpc.codec module.
"""

import pytest
import struct

from dgrpc.codec import (
    PayloadReader,
    PayloadWriter,
    decode_bool,
    decode_byte,
    decode_float,
    decode_int,
    decode_short,
    decode_string,
    decode_uint,
    encode_bool,
    encode_byte,
    encode_float,
    encode_int,
    encode_short,
    encode_string,
    encode_uint,
    string_size,
)
from dgrpc.exceptions import CodecError


class TestIntegers:
    """Tests for integer encoding."""

    def test_int_is_big_endian(self):
        """Test that ints are written most significant byte first."""
        assert encode_int(1) == b"\x00\x00\x00\x01"
        assert encode_int(0x01020304) == b"\x01\x02\x03\x04"

    def test_int_negative(self):
        """Test signed int round trip."""
        assert encode_int(-1) == b"\xff\xff\xff\xff"
        assert decode_int(encode_int(-123456)) == (-123456, 4)

    @pytest.mark.parametrize("value", [0, 1, 1000, 2**31 - 1, -(2**31)])
    def test_int_round_trip(self, value):
        """Test encode then decode yields the value and 4 consumed bytes."""
        assert decode_int(encode_int(value)) == (value, 4)

    def test_int_out_of_range(self):
        """Test that values outside 32 bits are rejected."""
        with pytest.raises(CodecError):
            encode_int(2**31)

    def test_uint_round_trip(self):
        """Test unsigned int covers the full 32-bit range."""
        assert decode_uint(encode_uint(0xFFFFFFFF)) == (0xFFFFFFFF, 4)

    def test_uint_rejects_negative(self):
        """Test unsigned int rejects negative values."""
        with pytest.raises(CodecError):
            encode_uint(-1)

    def test_short_round_trip(self):
        """Test 16-bit signed values."""
        assert encode_short(0x0102) == b"\x01\x02"
        assert decode_short(encode_short(-2)) == (-2, 2)

    def test_decode_at_offset(self):
        """Test decoding from the middle of a buffer."""
        buf = b"\xaa\xbb" + encode_int(77) + b"\xcc"
        assert decode_int(buf, 2) == (77, 4)

    def test_decode_past_end(self):
        """Test reads beyond the buffer raise instead of truncating."""
        with pytest.raises(CodecError):
            decode_int(b"\x00\x00\x01")
        with pytest.raises(CodecError):
            decode_int(encode_int(5), 1)


class TestFloat:
    """Tests for IEEE-754 float encoding."""

    def test_float_bit_pattern(self):
        """Test that the wire form is the single-precision bit pattern."""
        assert encode_float(1.0) == b"\x3f\x80\x00\x00"
        assert encode_float(-2.5) == struct.pack(">f", -2.5)

    @pytest.mark.parametrize("value", [0.0, 50.0, 100.25, -0.5, 1e6])
    def test_float_round_trip(self, value):
        """Test exactly representable floats survive the trip."""
        assert decode_float(encode_float(value)) == (value, 4)

    def test_float_is_single_precision(self):
        """Test that precision is reduced to 32 bits."""
        value, _ = decode_float(encode_float(0.1))
        assert value != 0.1
        assert value == pytest.approx(0.1, rel=1e-7)

    def test_float_overflow(self):
        """Test values beyond the single-precision range are rejected."""
        with pytest.raises(CodecError):
            encode_float(1e300)


class TestByteAndBool:
    """Tests for single-byte values."""

    def test_byte_round_trip(self):
        """Test unsigned byte values."""
        assert encode_byte(255) == b"\xff"
        assert decode_byte(b"\x07") == (7, 1)

    def test_byte_out_of_range(self):
        """Test bytes outside 0-255 are rejected."""
        with pytest.raises(CodecError):
            encode_byte(256)
        with pytest.raises(CodecError):
            encode_byte(-1)

    def test_bool(self):
        """Test booleans use one byte and any nonzero byte is true."""
        assert encode_bool(True) == b"\x01"
        assert encode_bool(False) == b"\x00"
        assert decode_bool(b"\x02") == (True, 1)
        assert decode_bool(b"\x00") == (False, 1)


class TestString:
    """Tests for length-prefixed strings."""

    def test_string_layout(self):
        """Test the 2-byte length prefix followed by UTF-8."""
        assert encode_string("abc") == b"\x00\x03abc"

    def test_empty_and_none(self):
        """Test empty and absent strings encode as a zero length."""
        assert encode_string("") == b"\x00\x00"
        assert encode_string(None) == b"\x00\x00"
        assert decode_string(b"\x00\x00") == ("", 2)

    def test_consumed_counts_prefix(self):
        """Test consumed bytes is 2 + encoded length."""
        value = "héllo"
        encoded = encode_string(value)
        assert decode_string(encoded) == (value, 2 + len(value.encode("utf-8")))

    def test_string_size(self):
        """Test size computation matches encoding."""
        for value in ["", None, "a", "日本語"]:
            assert string_size(value) == len(encode_string(value))

    def test_truncated_body(self):
        """Test a length prefix longer than the buffer is rejected."""
        with pytest.raises(CodecError):
            decode_string(b"\x00\x05ab")

    def test_too_long(self):
        """Test strings over 65535 bytes cannot be encoded."""
        with pytest.raises(CodecError):
            encode_string("x" * 70000)

    def test_invalid_utf8(self):
        """Test undecodable bytes raise CodecError."""
        with pytest.raises(CodecError):
            decode_string(b"\x00\x02\xff\xfe")


class TestPayloadCursor:
    """Tests for PayloadWriter and PayloadReader."""

    def test_mixed_fields(self):
        """Test walking a packed payload of mixed fields."""
        payload = (
            PayloadWriter()
            .string("alice")
            .int(1000)
            .string("secret")
            .byte(2)
            .float(50.0)
            .getvalue()
        )

        reader = PayloadReader(payload)
        assert reader.string() == "alice"
        assert reader.int() == 1000
        assert reader.string() == "secret"
        assert reader.byte() == 2
        assert reader.float() == 50.0
        assert reader.remaining == 0

    def test_writer_length(self):
        """Test writer length tracks appended bytes."""
        writer = PayloadWriter().int(1).string("ab")
        assert len(writer) == 4 + 4

    def test_reader_runs_out(self):
        """Test reading past the end raises CodecError."""
        reader = PayloadReader(encode_int(1))
        reader.int()
        with pytest.raises(CodecError):
            reader.int()
