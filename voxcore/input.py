"""
Input handling for the local player
"""

from enum import IntFlag
from typing import Dict, Optional, Tuple
import math

from .config import InputConfig, PhysicsConfig
from .physics import CollisionEngine, PlayerState
from .vector import Vec3
from .world import VoxelWorld

DEFAULT_BLOCK_COLOR = 0xFF0000


class InputFlags(IntFlag):
    """移动意图标志位"""
    NONE = 0
    MOVE_FORWARD = 1 << 0
    MOVE_BACKWARD = 1 << 1
    MOVE_LEFT = 1 << 2
    MOVE_RIGHT = 1 << 3


# 按键码 -> 移动标志
KEY_BINDINGS: Dict[str, InputFlags] = {
    'KeyW': InputFlags.MOVE_FORWARD,
    'ArrowUp': InputFlags.MOVE_FORWARD,
    'KeyS': InputFlags.MOVE_BACKWARD,
    'ArrowDown': InputFlags.MOVE_BACKWARD,
    'KeyA': InputFlags.MOVE_LEFT,
    'ArrowLeft': InputFlags.MOVE_LEFT,
    'KeyD': InputFlags.MOVE_RIGHT,
    'ArrowRight': InputFlags.MOVE_RIGHT,
}

JUMP_KEY = 'Space'


class PlayerController:
    """
    本地玩家控制器

    持有唯一的本地 PlayerState，负责：
    - 累积指针位移为 yaw/pitch
    - 按键按下/抬起时设置/清除移动标志（离散事件，不轮询）
    - 每 tick 驱动 CollisionEngine
    - 通过射线拾取放置/移除方块

    多个移动标志同时生效时先合成方向再归一化，
    斜向移动速度与单方向相同。
    """

    def __init__(self, state: Optional[PlayerState] = None,
                 physics: Optional[PhysicsConfig] = None,
                 input_config: Optional[InputConfig] = None):
        """
        初始化控制器

        Args:
            state: 初始玩家状态
            physics: 物理配置
            input_config: 输入配置
        """
        self.state = state or PlayerState()
        self.engine = CollisionEngine(physics)
        self.sensitivity = (input_config or InputConfig()).sensitivity
        self.flags = InputFlags.NONE

    # ==================== 输入事件 ====================

    def key_down(self, code: str) -> bool:
        """
        按键按下

        Args:
            code: 按键码（如 'KeyW'、'Space'）

        Returns:
            True 如果按键被处理
        """
        if code == JUMP_KEY:
            self.engine.jump(self.state)
            return True

        flag = KEY_BINDINGS.get(code)
        if flag is None:
            return False
        self.flags |= flag
        return True

    def key_up(self, code: str) -> bool:
        """按键抬起"""
        flag = KEY_BINDINGS.get(code)
        if flag is None:
            return False
        self.flags &= ~flag
        return True

    def pointer_move(self, dx: float, dy: float):
        """
        指针位移

        yaw -= dx * sensitivity，pitch -= dy * sensitivity，pitch 钳制到 ±pi/2。
        """
        self.state.yaw -= dx * self.sensitivity
        self.state.set_pitch(self.state.pitch - dy * self.sensitivity)

    def has_flag(self, flag: InputFlags) -> bool:
        return bool(self.flags & flag)

    def get_direction(self) -> Tuple[float, float]:
        """
        当前移动方向

        Returns:
            (strafe, forward)，非零时长度为 1
        """
        strafe = float(self.has_flag(InputFlags.MOVE_RIGHT)) - float(self.has_flag(InputFlags.MOVE_LEFT))
        forward = float(self.has_flag(InputFlags.MOVE_FORWARD)) - float(self.has_flag(InputFlags.MOVE_BACKWARD))
        mag = math.hypot(strafe, forward)
        if mag == 0:
            return 0.0, 0.0
        return strafe / mag, forward / mag

    # ==================== 模拟 ====================

    def tick(self, world: VoxelWorld):
        """推进一个物理 tick"""
        strafe, forward = self.get_direction()
        self.engine.step(self.state, world, strafe, forward)

    def look_direction(self) -> Vec3:
        """视线方向（由 yaw 和 pitch 决定）"""
        cp = math.cos(self.state.pitch)
        return Vec3(math.sin(self.state.yaw) * cp,
                    math.sin(self.state.pitch),
                    math.cos(self.state.yaw) * cp)

    # ==================== 方块编辑 ====================

    def place_block(self, world: VoxelWorld, origin: Vec3, direction: Vec3,
                    color: int = DEFAULT_BLOCK_COLOR, reach: float = 8.0) -> bool:
        """
        在射线命中面外侧放置方块

        不会放到与玩家当前包围盒重叠的位置。

        Returns:
            True 如果放置成功
        """
        hit = world.raycast_first(origin, direction, reach)
        if hit is None:
            return False
        x, y, z = world.placement_target(hit)
        return world.place(x, y, z, color, avoid=self.engine.player_aabb(self.state.position))

    def remove_block(self, world: VoxelWorld, origin: Vec3, direction: Vec3,
                     reach: float = 8.0) -> bool:
        """
        移除射线命中的方块

        Returns:
            True 如果移除成功
        """
        hit = world.raycast_first(origin, direction, reach)
        if hit is None:
            return False
        return world.remove(*hit.cell)
