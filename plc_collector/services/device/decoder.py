"""
Register Decoding

Turns slices of a register block into point values according to each
point's datatype and scale.
"""

import math
import struct

from ...common.config import DataPoint, RegisterDataType
from ...common.exceptions import DecodeError


def convert_registers(registers: list[int], datatype: RegisterDataType) -> int | float:
    """
    Convert raw registers to a typed value (big-endian, high word first).

    Raises:
        DecodeError: too few registers or a non-finite float
    """
    if not registers:
        raise DecodeError("no registers")

    if datatype == RegisterDataType.UINT16:
        return registers[0]

    if datatype == RegisterDataType.INT16:
        value = registers[0]
        if value >= 0x8000:
            value -= 0x10000
        return value

    if len(registers) < 2:
        raise DecodeError(f"{datatype.value} needs 2 registers, got {len(registers)}")

    if datatype == RegisterDataType.UINT32:
        return (registers[0] << 16) | registers[1]

    if datatype == RegisterDataType.INT32:
        value = (registers[0] << 16) | registers[1]
        if value >= 0x80000000:
            value -= 0x100000000
        return value

    if datatype == RegisterDataType.FLOAT32:
        packed = struct.pack(">HH", registers[0], registers[1])
        value = struct.unpack(">f", packed)[0]
        if math.isnan(value) or math.isinf(value):
            raise DecodeError(f"non-finite float {value}")
        return value

    raise DecodeError(f"unsupported datatype {datatype}")


def decode_point(block: list[int], block_start_offset: int, point: DataPoint) -> float:
    """
    Decode one point out of a block read.

    Args:
        block: Registers returned by the block read
        block_start_offset: Offset (relative to the device start register)
            of block[0]
        point: Point definition

    Returns:
        Scaled value

    Raises:
        DecodeError: if the point cannot be decoded
    """
    start = point.offset - block_start_offset
    end = start + point.width
    if start < 0 or end > len(block):
        raise DecodeError(
            f"registers {start}..{end} outside block of {len(block)}",
            point_name=point.name,
        )

    try:
        value = convert_registers(block[start:end], point.datatype)
    except DecodeError as e:
        e.point_name = point.name
        raise
    except struct.error as e:
        raise DecodeError(str(e), point_name=point.name) from e

    if point.scale != 1.0:
        return value * point.scale
    return value
