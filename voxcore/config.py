"""
全局配置模块

支持从 JSON 配置文件加载配置，方便调整物理常量和网络参数。

使用方法：
    from voxcore.config import get_config

    # 自动加载 config.json
    print(get_config().physics.gravity)

    # 或指定配置文件
    load_config('custom_config.json')

配置文件格式：
    config.json - 见项目根目录的 config.json 示例
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class PhysicsConfig:
    """
    物理配置

    所有物理常量都可调，测试可直接构造实例注入。
    单位：世界单位（方块边长 = 1）。速度以“每 tick 位移”表示。

    属性:
        gravity: 重力加速度，每 tick 竖直速度减少 gravity * dt
        damping: 水平阻尼，每 tick 水平速度衰减 damping * dt 的比例
        move_speed: 移动按键每 tick 叠加的速度
        jump_impulse: 起跳时竖直速度增量
        dt: 固定时间步长（秒），不随实际帧时间变化
        floor_y: 硬地板，玩家中心 y 不会低于此值
        terminal_velocity: 最大下落速度（每 tick 位移）
        player_half_extent: 玩家碰撞盒半尺寸 (0.5 x 1.8 x 0.5)
        collision_policy: "per_axis" 逐轴解析（可沿墙滑动）或 "reject" 整体拒绝
    """

    gravity: float = 9.8
    damping: float = 10.0
    move_speed: float = 0.1
    jump_impulse: float = 1.5
    dt: float = 0.01
    floor_y: float = 1.5
    terminal_velocity: float = 0.9
    player_half_extent: Tuple[float, float, float] = (0.25, 0.9, 0.25)
    collision_policy: str = 'per_axis'


@dataclass
class InputConfig:
    """
    输入配置
    """

    sensitivity: float = 0.002


@dataclass
class WorldConfig:
    """
    世界生成配置
    """

    width: int = 64
    depth: int = 64
    world_height: int = 5
    noise_frequency: float = 50.0
    seed: int = 12345
    fill_columns: bool = False
    reach: float = 8.0


@dataclass
class NetworkConfig:
    """
    网络配置
    """

    host: str = '0.0.0.0'
    port: int = 8080
    send_interval: float = 0.1
    idle_timeout: float = 30.0
    ping_interval: float = 20.0
    ping_timeout: float = 10.0
    max_requests_per_second: int = 100
    max_message_size: int = 10 * 1024
    outbound_queue_size: int = 32
    broadcast_on_leave: bool = False
    binary: bool = False


@dataclass
class Config:
    """
    全局配置类

    从 JSON 文件加载配置，支持重新加载。

    使用方法:
        from voxcore.config import get_config

        print(get_config().physics.gravity)
        print(get_config().network.port)

    从文件加载:
        CONFIG.load_from_file('config.json')

    保存到文件:
        CONFIG.save_to_file('config.json')
    """

    physics: PhysicsConfig = field(default_factory=PhysicsConfig)
    input: InputConfig = field(default_factory=InputConfig)
    world: WorldConfig = field(default_factory=WorldConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)

    # 配置文件路径
    _config_path: Optional[str] = field(default=None, repr=False)
    _loaded: bool = field(default=False, repr=False)

    SECTIONS = ('physics', 'input', 'world', 'network')

    def load_from_file(self, path: str) -> bool:
        """
        从 JSON 文件加载配置

        Args:
            path: 配置文件路径

        Returns:
            True 如果成功
        """
        config_path = Path(path)
        if not config_path.exists():
            logger.warning(f"Config file not found: {path}")
            return False

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Config JSON parse error in {path}: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to read config {path}: {e}")
            return False

        if not isinstance(data, dict):
            logger.error(f"Config root must be an object: {path}")
            return False

        # 更新各部分配置
        for section in self.SECTIONS:
            if isinstance(data.get(section), dict):
                self._update_dataclass(getattr(self, section), data[section])

        self._config_path = path
        self._loaded = True
        logger.info(f"Loaded config: {path}")
        return True

    def save_to_file(self, path: str) -> bool:
        """
        保存配置到 JSON 文件

        Args:
            path: 配置文件路径

        Returns:
            True 如果成功
        """
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save config {path}: {e}")
            return False

        logger.info(f"Saved config: {path}")
        return True

    def reload(self) -> bool:
        """
        重新加载配置文件

        Returns:
            True 如果成功
        """
        if self._config_path:
            return self.load_from_file(self._config_path)
        return False

    @staticmethod
    def _update_dataclass(obj, data: dict):
        """更新 dataclass 对象的属性（忽略未知键）"""
        for key, value in data.items():
            if hasattr(obj, key):
                if isinstance(getattr(obj, key), tuple) and isinstance(value, list):
                    value = tuple(value)
                setattr(obj, key, value)

    def to_dict(self) -> dict:
        """转换为字典"""
        return {section: asdict(getattr(self, section)) for section in self.SECTIONS}

    def __str__(self) -> str:
        lines = ["=== Config ==="]
        lines.append(f"physics: gravity={self.physics.gravity}, dt={self.physics.dt}, "
                     f"policy={self.physics.collision_policy}")
        lines.append(f"world: {self.world.width}x{self.world.depth}, height={self.world.world_height}")
        lines.append(f"network: {self.network.host}:{self.network.port}, "
                     f"send_interval={self.network.send_interval}s")
        return '\n'.join(lines)


# ============ 全局配置实例 ============

CONFIG = Config()

_config_loaded = False
_default_config_paths = [
    Path(__file__).parent.parent / 'config.json',  # 项目根目录
    Path.cwd() / 'config.json',  # 当前工作目录
]


def _ensure_config_loaded():
    """确保配置已加载（延迟加载）"""
    global _config_loaded

    if _config_loaded:
        return

    for config_path in _default_config_paths:
        if config_path.exists():
            CONFIG.load_from_file(str(config_path))
            break

    _config_loaded = True


# ============ 便捷访问 ============

def get_config() -> Config:
    """获取全局配置（首次调用时加载 config.json）"""
    _ensure_config_loaded()
    return CONFIG


def load_config(path: str) -> Config:
    """
    加载指定配置文件

    Args:
        path: 配置文件路径

    Returns:
        Config 实例
    """
    global _config_loaded
    CONFIG.load_from_file(path)
    _config_loaded = True
    return CONFIG


def reset_config():
    """重置配置为默认值"""
    global CONFIG, _config_loaded
    CONFIG = Config()
    _config_loaded = False
