"""
三维向量

玩家位置、速度、朝向以及射线计算都使用这个简单的浮点向量。
"""

from dataclasses import dataclass
import math


@dataclass
class Vec3:
    """
    三维浮点向量

    属性:
        x (float): X 分量
        y (float): Y 分量（竖直方向）
        z (float): Z 分量
    """
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __add__(self, other: 'Vec3') -> 'Vec3':
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: 'Vec3') -> 'Vec3':
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, k: float) -> 'Vec3':
        return Vec3(self.x * k, self.y * k, self.z * k)

    __rmul__ = __mul__

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def length(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def normalized(self) -> 'Vec3':
        """
        归一化

        零向量原样返回（复制）。
        """
        mag = self.length()
        if mag > 0:
            return Vec3(self.x / mag, self.y / mag, self.z / mag)
        return Vec3(self.x, self.y, self.z)

    def rotate_y(self, yaw: float) -> 'Vec3':
        """
        绕 Y 轴旋转

        Args:
            yaw: 旋转角（弧度）

        Returns:
            旋转后的新向量
        """
        c = math.cos(yaw)
        s = math.sin(yaw)
        return Vec3(self.x * c + self.z * s, self.y, -self.x * s + self.z * c)

    def copy(self) -> 'Vec3':
        return Vec3(self.x, self.y, self.z)

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self)

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'z': self.z}

    @classmethod
    def from_dict(cls, data: dict) -> 'Vec3':
        return cls(float(data['x']), float(data['y']), float(data['z']))
