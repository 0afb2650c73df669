"""
体素碰撞与物理积分

本模块提供每 tick 的玩家物理模拟：
- PlayerState: 玩家状态（位置、朝向、速度、是否着地）
- CollisionEngine: 对 VoxelWorld 解析移动中的玩家包围盒

时间步长固定（PhysicsConfig.dt），不随实际帧时间变化。
速度以“每 tick 位移”表示：候选位置 = 位置 + 速度。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging
import math

from .config import PhysicsConfig
from .vector import Vec3
from .world import AABB, VoxelWorld

logger = logging.getLogger(__name__)

PITCH_LIMIT = math.pi / 2

POLICY_PER_AXIS = 'per_axis'
POLICY_REJECT = 'reject'


@dataclass
class PlayerState:
    """
    玩家状态

    本地玩家的实例只由 PlayerController 修改。

    属性:
        position (Vec3):
            包围盒中心位置。

        yaw (float):
            水平朝向（弧度）。
            前方为 +Z 绕 Y 轴旋转 yaw。

        pitch (float):
            俯仰角（弧度），限制在 [-pi/2, pi/2]。

        velocity (Vec3):
            速度（每 tick 位移）。

        grounded (bool):
            是否着地。
            只有在地板钳制或向下碰撞发生的那个 tick 之后为 True，
            为 True 时才允许跳跃。
    """
    position: Vec3 = field(default_factory=Vec3)
    yaw: float = 0.0
    pitch: float = 0.0
    velocity: Vec3 = field(default_factory=Vec3)
    grounded: bool = False

    def set_pitch(self, pitch: float):
        """设置俯仰角（自动钳制）"""
        self.pitch = max(-PITCH_LIMIT, min(PITCH_LIMIT, pitch))

    def rotation(self) -> Vec3:
        """同步协议使用的欧拉角：x = pitch，y = yaw"""
        return Vec3(self.pitch, self.yaw, 0.0)

    def pose(self) -> Tuple[Vec3, Vec3]:
        """
        当前姿态

        Returns:
            (position, rotation) 副本
        """
        return self.position.copy(), self.rotation()


class CollisionEngine:
    """
    玩家碰撞引擎

    每个 tick 的流程:
    1. 水平速度按阻尼衰减（摩擦）
    2. 应用重力，并限制最大下落速度
    3. 叠加移动输入（按 yaw 旋转到玩家朝向）
    4. 按碰撞策略解析移动
    5. 地板钳制

    碰撞策略:
        per_axis:
            依次测试 X、Y、Z 三个轴，被阻挡的轴不移动且该轴速度清零，
            其余轴照常移动（可以沿墙滑动）。向下被阻挡时着地。
        reject:
            候选位置与任何方块重叠时整体拒绝移动，
            竖直速度钳制为 >= 0 并标记着地。

    属性:
        config (PhysicsConfig):
            物理常量。

        half_extent (Vec3):
            玩家包围盒半尺寸。

        blocked_axes (List[str]):
            最近一个 tick 被阻挡的轴（reject 策略下为 ['x', 'y', 'z']）。
    """

    AXES = ('x', 'y', 'z')

    def __init__(self, config: Optional[PhysicsConfig] = None):
        """
        初始化碰撞引擎

        Args:
            config: 物理配置，默认使用 PhysicsConfig()
        """
        self.config = config or PhysicsConfig()
        if self.config.collision_policy not in (POLICY_PER_AXIS, POLICY_REJECT):
            raise ValueError(f"Unknown collision policy: {self.config.collision_policy!r}")
        self.half_extent = Vec3(*self.config.player_half_extent)
        self.blocked_axes: List[str] = []

    def player_aabb(self, position: Vec3) -> AABB:
        """以 position 为中心的玩家包围盒"""
        return AABB.from_center(position, self.half_extent)

    def collides(self, world: VoxelWorld, position: Vec3) -> bool:
        box = self.player_aabb(position)
        return world.intersects_aabb(box.min, box.max)

    def wish_velocity(self, yaw: float, strafe: float, forward: float) -> Vec3:
        """
        移动输入对应的水平速度增量

        Args:
            yaw: 玩家朝向
            strafe: 右方向分量
            forward: 前方向分量

        Returns:
            世界坐标下的速度增量
        """
        forward_dir = Vec3(0.0, 0.0, 1.0).rotate_y(yaw)
        right_dir = Vec3(1.0, 0.0, 0.0).rotate_y(yaw)
        return (forward_dir * forward + right_dir * strafe) * self.config.move_speed

    def jump(self, state: PlayerState) -> bool:
        """
        起跳

        仅在着地时生效，立即清除着地标志。

        Returns:
            True 如果起跳成功
        """
        if not state.grounded:
            return False
        state.velocity.y += self.config.jump_impulse
        state.grounded = False
        return True

    def step(self, state: PlayerState, world: VoxelWorld,
             strafe: float = 0.0, forward: float = 0.0):
        """
        推进一个 tick

        Args:
            state: 要更新的玩家状态
            world: 碰撞所用的体素世界
            strafe: 右方向输入分量
            forward: 前方向输入分量
        """
        cfg = self.config
        vel = state.velocity

        if not state.position.is_finite():
            logger.warning(f"Skipping physics step for non-finite position {state.position}")
            return

        # 阻尼
        decay = max(0.0, 1.0 - cfg.damping * cfg.dt)
        vel.x *= decay
        vel.z *= decay

        # 重力
        vel.y -= cfg.gravity * cfg.dt
        vel.y = max(vel.y, -cfg.terminal_velocity)

        # 移动输入
        if strafe or forward:
            wish = self.wish_velocity(state.yaw, strafe, forward)
            vel.x += wish.x
            vel.z += wish.z

        state.grounded = False
        self.blocked_axes = []

        if cfg.collision_policy == POLICY_REJECT:
            self._resolve_reject(state, world)
        else:
            self._resolve_per_axis(state, world)

        # 硬地板
        if state.position.y < cfg.floor_y:
            state.position.y = cfg.floor_y
            if vel.y < 0:
                vel.y = 0.0
            state.grounded = True

    def _resolve_reject(self, state: PlayerState, world: VoxelWorld):
        """整体拒绝"""
        candidate = state.position + state.velocity
        if not candidate.is_finite():
            self.blocked_axes = list(self.AXES)
            state.velocity = Vec3()
            return
        if not self.collides(world, candidate):
            state.position = candidate
            return

        self.blocked_axes = list(self.AXES)
        state.velocity.y = max(state.velocity.y, 0.0)
        state.grounded = True

    def _resolve_per_axis(self, state: PlayerState, world: VoxelWorld):
        """逐轴解析"""
        position = state.position.copy()
        vel = state.velocity

        for axis in self.AXES:
            delta = getattr(vel, axis)
            if delta == 0:
                continue

            trial = position.copy()
            setattr(trial, axis, getattr(position, axis) + delta)

            # 非有限位移视为被阻挡，但不算着地
            if not trial.is_finite():
                self.blocked_axes.append(axis)
                setattr(vel, axis, 0.0)
                continue

            if not self.collides(world, trial):
                position = trial
                continue

            self.blocked_axes.append(axis)
            if axis == 'y' and delta < 0:
                state.grounded = True
            setattr(vel, axis, 0.0)

        state.position = position
