import struct


def swap32(value: int) -> int:
    """Swap bytes of a 32-bit word"""
    value &= 0xFFFFFFFF
    out = (value & 0xFF000000) >> 24
    out |= (value & 0x00FF0000) >> 8
    out |= (value & 0x0000FF00) << 8
    out |= (value & 0x000000FF) << 24
    return out


def swap16(value: int) -> int:
    """Swap bytes of a 16-bit half-word"""
    value &= 0xFFFF
    return ((value & 0x00FF) << 8) | ((value & 0xFF00) >> 8)


def read_be16(data: bytes, offset: int = 0) -> int:
    return struct.unpack_from(">H", data, offset)[0]


def read_be24(data: bytes, offset: int = 0) -> int:
    """Packed 3-byte block address, most significant byte first"""
    b0, b1, b2 = data[offset:offset + 3]
    return (b0 << 16) | (b1 << 8) | b2


def read_be32(data: bytes, offset: int = 0) -> int:
    return struct.unpack_from(">I", data, offset)[0]
