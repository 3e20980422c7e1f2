"""Bit-level encoding of short product codes for the circular QR pattern.

A code of up to five characters becomes 40 data bits (one byte per
character, zero padded) followed by an 8-bit XOR-fold checksum. The fold
only sees column parity, so two flips in the same bit column of different
bytes cancel out and go unnoticed. Printed codes and the ring detector
depend on this exact scheme, so it must stay as is.
"""
from dataclasses import dataclass
from functools import reduce

from ..errors import ChecksumMismatch, ValidationError

MAX_CODE_LENGTH = 5
DATA_BITS = MAX_CODE_LENGTH * 8
CHECKSUM_BITS = 8
TOTAL_BITS = DATA_BITS + CHECKSUM_BITS

# (segments, first bit) for inner, middle and outer ring
RING_LAYOUT = ((8, 0), (16, 8), (24, 24))


@dataclass(frozen=True)
class BitSequence:
    bits: str

    def __post_init__(self):
        if len(self.bits) != TOTAL_BITS:
            raise ValueError(f'bit sequence must be {TOTAL_BITS} bits, got {len(self.bits)}')
        if set(self.bits) - {'0', '1'}:
            raise ValueError('bit sequence may only contain 0 and 1')

    @property
    def data_bits(self) -> str:
        return self.bits[:DATA_BITS]

    @property
    def checksum_bits(self) -> str:
        return self.bits[DATA_BITS:]

    @property
    def checksum(self) -> int:
        return int(self.checksum_bits, 2)

    def to_int(self) -> int:
        return int(self.bits, 2)

    @classmethod
    def from_int(cls, value: int) -> 'BitSequence':
        if value < 0 or value >= 1 << TOTAL_BITS:
            raise ValueError('value does not fit in 48 bits')
        return cls(format(value, f'0{TOTAL_BITS}b'))

    def flip(self, index: int) -> 'BitSequence':
        flipped = '1' if self.bits[index] == '0' else '0'
        return BitSequence(self.bits[:index] + flipped + self.bits[index + 1:])

    def __str__(self):
        return self.bits


@dataclass(frozen=True)
class DecodedCode:
    code: str
    valid: bool = True


def _bytes_of(data_bits: str) -> list[int]:
    return [int(data_bits[i:i + 8], 2) for i in range(0, len(data_bits), 8)]


def xor_fold(data_bits: str) -> int:
    return reduce(lambda acc, byte: acc ^ byte, _bytes_of(data_bits), 0)


def encode(code: str) -> BitSequence:
    truncated = code[:MAX_CODE_LENGTH]
    for ch in truncated:
        if ord(ch) > 0xFF:
            raise ValidationError(f'character {ch!r} does not fit in 8 bits', category='encoding')
    data = ''.join(format(ord(ch), '08b') for ch in truncated).ljust(DATA_BITS, '0')
    return BitSequence(data + format(xor_fold(data), '08b'))


def decode(bits: BitSequence | str) -> DecodedCode:
    if not isinstance(bits, BitSequence):
        bits = BitSequence(bits)
    if xor_fold(bits.data_bits) != bits.checksum:
        raise ChecksumMismatch()
    raw = ''.join(chr(b) for b in _bytes_of(bits.data_bits))
    return DecodedCode(raw.rstrip('\x00'))


def rings(bits: BitSequence) -> tuple[str, str, str]:
    """Split a sequence into the bits drawn on the inner, middle and outer ring."""
    return tuple(bits.bits[start:start + count] for count, start in RING_LAYOUT)


def from_rings(inner: str, middle: str, outer: str) -> BitSequence:
    for ring, (count, _) in zip((inner, middle, outer), RING_LAYOUT):
        if len(ring) != count:
            raise ValueError(f'ring must carry {count} bits, got {len(ring)}')
    return BitSequence(inner + middle + outer)


def segment_angles(count: int) -> list[float]:
    """Centre angle of each segment, degrees clockwise from 3 o'clock."""
    return [i * 360 / count for i in range(count)]
