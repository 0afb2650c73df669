"""
Voxel sandbox sync client
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from voxcore.config import Config, NetworkConfig, get_config
from voxcore.protocol import (
    MESSAGE_TYPE_UPDATE, Frame, InvalidState, decode, encode, parse_vector, update_message,
)
from voxcore.state import Game, RemotePlayer
from voxcore.vector import Vec3

logger = logging.getLogger(__name__)

PoseSource = Callable[[], Tuple[Vec3, Vec3]]


class SyncClient:
    """
    状态同步客户端

    - 每 send_interval 秒无条件发送一次本地姿态（不论是否变化）
    - 收到的远程快照整体替换 latest_players，不做增量合并
    """

    def __init__(self, pose_source: PoseSource, config: Optional[NetworkConfig] = None):
        """
        初始化客户端

        Args:
            pose_source: 返回 (position, rotation) 的函数，通常是 PlayerState.pose
            config: 网络配置
        """
        self.pose_source = pose_source
        self.config = config or get_config().network

        # 连接信息
        self.websocket = None
        self.connected = False

        # 远程玩家
        self.latest_players: List[RemotePlayer] = []
        self.snapshot_count = 0
        self.sent_count = 0

        # 回调
        self.on_snapshot_callback: Optional[Callable] = None

        # 任务
        self.recv_task: Optional[asyncio.Task] = None
        self.send_task: Optional[asyncio.Task] = None

    async def connect(self, server_url: str) -> bool:
        """
        连接到服务器

        Args:
            server_url: 服务器地址 (ws://host:port)

        Returns:
            是否连接成功
        """
        try:
            self.websocket = await asyncio.wait_for(
                websockets.connect(server_url),
                timeout=10.0
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Connection failed: {e}")
            return False

        self.connected = True
        self.recv_task = asyncio.create_task(self._recv_loop())
        self.send_task = asyncio.create_task(self._send_loop())
        logger.info(f"Connected to {server_url}")
        return True

    async def disconnect(self):
        """断开连接"""
        self.connected = False

        for task in (self.send_task, self.recv_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.send_task = None
        self.recv_task = None

        if self.websocket:
            await self.websocket.close()
            self.websocket = None

    async def send_pose(self) -> bool:
        """
        发送当前姿态

        Returns:
            是否发送成功
        """
        if not self.connected or not self.websocket:
            return False

        position, rotation = self.pose_source()
        try:
            await self.websocket.send(encode(update_message(position, rotation), self.config.binary))
        except ConnectionClosed:
            logger.info("Connection closed while sending")
            self.connected = False
            return False

        self.sent_count += 1
        return True

    async def _send_loop(self):
        """固定间隔发送循环"""
        while self.connected:
            await self.send_pose()
            await asyncio.sleep(self.config.send_interval)

    async def _recv_loop(self):
        """接收消息循环"""
        try:
            async for message in self.websocket:
                self.handle_message(message)
        except ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self.connected = False

    def handle_message(self, message: Frame) -> bool:
        """
        处理服务器消息

        Returns:
            True 如果消息是有效快照并已应用
        """
        data = decode(message, self.config.max_message_size)
        if data is None or data.get('type') != MESSAGE_TYPE_UPDATE:
            return False

        players = data.get('players')
        if not isinstance(players, list):
            return False

        try:
            snapshot = [
                RemotePlayer(parse_vector(p.get('position')), parse_vector(p.get('rotation')))
                for p in players
                if isinstance(p, dict)
            ]
        except InvalidState as e:
            logger.warning(f"Dropped snapshot with invalid player: {e}")
            return False

        self.latest_players = snapshot
        self.snapshot_count += 1

        if self.on_snapshot_callback:
            self.on_snapshot_callback(snapshot)
        return True

    def on_snapshot(self, callback: Callable):
        """设置快照回调"""
        self.on_snapshot_callback = callback


class ClientGameLoop:
    """
    客户端游戏循环

    以固定物理步长推进 Game。每个 tick 开始时应用收到的最新远程快照。
    """

    def __init__(self, game: Game, client: Optional[SyncClient] = None):
        """
        初始化游戏循环

        Args:
            game: 游戏上下文
            client: 同步客户端，为 None 时单机运行
        """
        self.game = game
        self.client = client
        self.tick_time = game.config.physics.dt
        self.running = False

        # 回调
        self.on_render: Optional[Callable] = None

        if client is not None:
            client.on_snapshot(game.apply_remote_snapshot)

    async def run(self, max_ticks: Optional[int] = None):
        """运行游戏循环"""
        self.running = True
        ticks = 0

        while self.running:
            self.game.tick()
            ticks += 1

            if self.on_render:
                self.on_render(self.game.snapshot())

            if max_ticks is not None and ticks >= max_ticks:
                break
            await asyncio.sleep(self.tick_time)

        self.running = False

    def stop(self):
        """停止游戏循环"""
        self.running = False


async def example_client(url: str, config: Config):
    """无渲染的示例客户端：站在原地并打印远程玩家数量"""
    game = Game.create(config)
    client = SyncClient(game.player.pose, config.network)

    if not await client.connect(url):
        return

    def on_render(snapshot):
        if snapshot['tick'] % 100 == 0:
            logger.info(f"tick {snapshot['tick']}: {len(snapshot['remote_players'])} remote players")

    loop = ClientGameLoop(game, client)
    loop.on_render = on_render
    try:
        await loop.run()
    finally:
        await client.disconnect()


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    cfg = get_config()
    asyncio.run(example_client(f'ws://localhost:{cfg.network.port}', cfg))
