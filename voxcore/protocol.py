"""
状态同步协议

消息格式（JSON 文本帧，或同结构的 msgpack 二进制帧）：

    客户端 -> 服务器:
        {"type": "update", "position": {"x", "y", "z"}, "rotation": {"x", "y", "z"}}

    服务器 -> 客户端:
        {"type": "update", "players": [{"position": {...}, "rotation": {...}}, ...]}

没有其他消息类型，缺少 type == "update" 的消息一律忽略。
"""

from typing import List, Optional, Tuple, Union
import json
import math

import msgpack

from .vector import Vec3

MESSAGE_TYPE_UPDATE = 'update'
MAX_MESSAGE_SIZE = 10 * 1024  # 10KB

Frame = Union[str, bytes]


class InvalidState(ValueError):
    """消息中的位置/朝向字段缺失或不是有限数值"""


def encode(message: dict, binary: bool = False) -> Frame:
    """
    编码消息

    Args:
        message: 消息字典
        binary: True 使用 msgpack 二进制帧，否则 JSON 文本帧

    Returns:
        str（JSON）或 bytes（msgpack）
    """
    if binary:
        return msgpack.packb(message)
    return json.dumps(message, separators=(',', ':'))


def decode(raw: Frame, max_size: int = MAX_MESSAGE_SIZE) -> Optional[dict]:
    """
    解码消息

    文本帧按 JSON 解析；二进制帧按 msgpack 解析，失败时再尝试 UTF-8 JSON。

    Returns:
        消息字典，任何失败（超长、格式错误、非对象）返回 None
    """
    # 文本帧按 UTF-8 字节计长，与二进制帧口径一致
    size = len(raw.encode('utf-8', 'surrogatepass')) if isinstance(raw, str) else len(raw)
    if size > max_size:
        return None

    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError:
            return None
    else:
        try:
            data = msgpack.unpackb(raw, raw=False)
        except Exception:
            try:
                data = json.loads(raw.decode('utf-8'))
            except ValueError:
                return None

    if not isinstance(data, dict):
        return None
    return data


def parse_vector(data) -> Vec3:
    """
    解析 {"x", "y", "z"} 向量

    Raises:
        InvalidState: 缺字段、非数值或非有限值
    """
    if not isinstance(data, dict):
        raise InvalidState(f"expected vector object, got {type(data).__name__}")

    values = []
    for key in ('x', 'y', 'z'):
        value = data.get(key)
        # bool 是 int 的子类，单独排除
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidState(f"vector field {key!r} is not a number")
        try:
            value = float(value)
        except OverflowError:
            raise InvalidState(f"vector field {key!r} is out of range")
        if not math.isfinite(value):
            raise InvalidState(f"vector field {key!r} is not finite")
        values.append(value)
    return Vec3(*values)


def parse_update(data: dict) -> Tuple[Vec3, Vec3]:
    """
    解析客户端 update 消息

    Returns:
        (position, rotation)

    Raises:
        InvalidState: 位置或朝向无效
    """
    return parse_vector(data.get('position')), parse_vector(data.get('rotation'))


def update_message(position: Vec3, rotation: Vec3) -> dict:
    """客户端 update 消息"""
    return {
        'type': MESSAGE_TYPE_UPDATE,
        'position': position.to_dict(),
        'rotation': rotation.to_dict(),
    }


def snapshot_message(entries: List[Tuple[Vec3, Vec3]]) -> dict:
    """服务器广播的快照消息"""
    return {
        'type': MESSAGE_TYPE_UPDATE,
        'players': [
            {'position': position.to_dict(), 'rotation': rotation.to_dict()}
            for position, rotation in entries
        ],
    }
