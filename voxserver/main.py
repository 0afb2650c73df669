"""
Player position relay server
"""

import argparse
import asyncio
import itertools
import logging
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from voxcore.config import NetworkConfig, get_config, load_config
from voxcore.protocol import (
    MESSAGE_TYPE_UPDATE, MAX_MESSAGE_SIZE, Frame, InvalidState,
    decode, encode, parse_update, snapshot_message,
)
from voxcore.vector import Vec3

logger = logging.getLogger(__name__)


# ==================== 安全组件 ====================

class RateLimiter:
    """速率限制器（滑动窗口）"""

    def __init__(self, max_requests: int = 100, window: float = 1.0):
        self.max_requests = max_requests
        self.window = window
        self.requests: Dict[int, deque] = {}

    def is_allowed(self, key: int) -> bool:
        """检查是否允许请求"""
        now = time.monotonic()
        history = self.requests.setdefault(key, deque())

        # 清理过期记录
        while history and now - history[0] > self.window:
            history.popleft()

        if len(history) >= self.max_requests:
            return False

        history.append(now)
        return True

    def forget(self, key: int):
        self.requests.pop(key, None)


class MessageValidator:
    """消息验证器"""

    @classmethod
    def validate(cls, message: Frame, max_size: int = MAX_MESSAGE_SIZE) -> Optional[dict]:
        """
        验证消息格式

        Returns:
            type == "update" 的消息字典，否则 None
        """
        data = decode(message, max_size)
        if data is None:
            return None
        if data.get('type') != MESSAGE_TYPE_UPDATE:
            return None
        return data


# ==================== 数据类 ====================

@dataclass(eq=False)
class Connection:
    """
    连接句柄

    不透明的传输层身份，作为注册表的键，与任何玩家自报的 ID 无关。
    按对象身份比较和哈希。

    属性:
        conn_id: 仅用于日志和统计的序号
        websocket: 底层连接
        binary: 对端最近一次使用的是否为二进制帧，回复时沿用
        queue: 有界发送队列，满时丢弃最旧消息
    """
    conn_id: int
    websocket: object
    queue: asyncio.Queue
    binary: bool = False
    connected_at: float = field(default_factory=time.time)
    dropped: int = 0
    writer_task: Optional[asyncio.Task] = None

    def enqueue(self, message: dict) -> bool:
        """
        非阻塞入队

        Returns:
            False 如果为腾出空间丢弃了旧消息
        """
        frame = encode(message, self.binary)
        dropped = False
        if self.queue.full():
            self.queue.get_nowait()
            self.queue.task_done()
            self.dropped += 1
            dropped = True
        self.queue.put_nowait(frame)
        return not dropped


@dataclass
class PlayerEntry:
    """注册表条目"""
    connection_id: int
    position: Vec3
    rotation: Vec3
    last_update_time: float


class PlayerRegistry:
    """
    玩家注册表

    每个连接至多一个条目：首次 update 时创建，之后原地覆盖，断开时删除。
    """

    def __init__(self):
        self._entries: Dict[Connection, PlayerEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conn: Connection) -> bool:
        return conn in self._entries

    def get(self, conn: Connection) -> Optional[PlayerEntry]:
        return self._entries.get(conn)

    def upsert(self, conn: Connection, position: Vec3, rotation: Vec3,
               now: Optional[float] = None) -> PlayerEntry:
        """查找或插入，并覆盖位置和朝向"""
        now = time.time() if now is None else now
        entry = self._entries.get(conn)
        if entry is None:
            entry = PlayerEntry(conn.conn_id, position, rotation, now)
            self._entries[conn] = entry
        else:
            entry.position = position
            entry.rotation = rotation
            entry.last_update_time = now
        return entry

    def remove(self, conn: Connection) -> bool:
        return self._entries.pop(conn, None) is not None

    def snapshot_excluding(self, conn: Connection) -> List[Tuple[Vec3, Vec3]]:
        """除 conn 之外所有条目的 (position, rotation)"""
        return [
            (entry.position, entry.rotation)
            for other, entry in self._entries.items()
            if other is not conn
        ]


# ==================== 服务器类 ====================

class SyncServer:
    """
    状态同步中继服务器

    收到某连接的 update 后更新注册表，并向其他每个打开的连接发送
    一份不含接收者自己的完整快照。发送者本身不会收到广播。
    注册表的查找/插入/删除和快照读取都在同一把锁内完成；
    每个连接有独立的有界发送队列和写任务，慢连接不会阻塞其他连接。
    """

    def __init__(self, config: Optional[NetworkConfig] = None):
        """
        初始化服务器

        Args:
            config: 网络配置
        """
        self.config = config or get_config().network

        self.registry = PlayerRegistry()
        self.connections: Dict[int, Connection] = {}
        self.rate_limiter = RateLimiter(
            max_requests=self.config.max_requests_per_second,
            window=1.0
        )

        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self.message_count = 0
        self.running = False

    async def listen(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        开始监听

        Returns:
            websockets 服务器对象
        """
        host = self.config.host if host is None else host
        port = self.config.port if port is None else port
        server = await websockets.serve(
            self._handle_connection,
            host,
            port,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            max_size=self.config.max_message_size,
        )
        self.running = True
        logger.info(f"Relay listening on ws://{host}:{port}")
        return server

    async def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        启动服务器并运行到收到关闭信号

        Args:
            host: 监听地址
            port: 监听端口
        """
        server = await self.listen(host, port)
        try:
            await self._wait_shutdown()
        finally:
            server.close()
            await server.wait_closed()
            self.running = False
            logger.info("Relay stopped")

    # ==================== 连接生命周期 ====================

    def register_connection(self, websocket) -> Connection:
        """登记新连接并启动其写任务"""
        conn = Connection(
            conn_id=next(self._ids),
            websocket=websocket,
            queue=asyncio.Queue(maxsize=self.config.outbound_queue_size),
        )
        conn.writer_task = asyncio.create_task(self._writer(conn))
        self.connections[conn.conn_id] = conn
        logger.info(f"Player connected (conn {conn.conn_id})")
        return conn

    async def _handle_connection(self, websocket):
        """处理客户端连接"""
        conn = self.register_connection(websocket)

        try:
            while True:
                try:
                    message = await asyncio.wait_for(
                        websocket.recv(),
                        timeout=self.config.idle_timeout
                    )
                except asyncio.TimeoutError:
                    logger.info(f"Conn {conn.conn_id} idle for {self.config.idle_timeout}s, closing")
                    await websocket.close(1001, "Idle timeout")
                    break

                await self.handle_message(conn, message)

        except ConnectionClosed:
            pass
        except Exception:
            logger.exception(f"Connection error (conn {conn.conn_id})")
        finally:
            await self.handle_disconnect(conn)

    async def handle_message(self, conn: Connection, message: Frame):
        """处理一条客户端消息"""
        if not self.rate_limiter.is_allowed(conn.conn_id):
            logger.warning(f"Rate limit exceeded for conn {conn.conn_id}")
            return

        conn.binary = isinstance(message, bytes)

        data = MessageValidator.validate(message, self.config.max_message_size)
        if data is None:
            logger.debug(f"Dropped malformed message from conn {conn.conn_id}")
            return

        try:
            position, rotation = parse_update(data)
        except InvalidState as e:
            logger.warning(f"Invalid update from conn {conn.conn_id}: {e}")
            return

        async with self._lock:
            if conn.conn_id not in self.connections:
                return
            self.message_count += 1
            self.registry.upsert(conn, position, rotation)
            self._broadcast(exclude=conn)

    async def handle_disconnect(self, conn: Connection):
        """处理断开：立即删除注册表条目"""
        async with self._lock:
            if self.connections.pop(conn.conn_id, None) is None:
                return
            self.registry.remove(conn)
            self.rate_limiter.forget(conn.conn_id)
            if self.config.broadcast_on_leave:
                self._broadcast(exclude=conn)

        if conn.writer_task:
            conn.writer_task.cancel()
            try:
                await conn.writer_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception(f"Writer for conn {conn.conn_id} failed")

        logger.info(f"Player disconnected (conn {conn.conn_id})")

    def _broadcast(self, exclude: Connection):
        """
        向除 exclude 外的每个连接发送不含接收者自己的快照

        调用方必须持有 _lock。
        """
        for target in list(self.connections.values()):
            if target is exclude:
                continue
            message = snapshot_message(self.registry.snapshot_excluding(target))
            if not target.enqueue(message):
                logger.debug(f"Outbound queue full for conn {target.conn_id}, dropped oldest")

    async def _writer(self, conn: Connection):
        """逐条发送连接的待发消息"""
        while True:
            frame = await conn.queue.get()
            try:
                await conn.websocket.send(frame)
            except ConnectionClosed:
                logger.debug(f"Send to closed conn {conn.conn_id} skipped")
            finally:
                conn.queue.task_done()

    async def flush(self):
        """等待所有已入队消息发送完毕"""
        for conn in list(self.connections.values()):
            await conn.queue.join()

    async def _wait_shutdown(self):
        """等待关闭信号"""
        loop = asyncio.get_running_loop()
        stop = loop.create_future()

        def signal_handler():
            if not stop.done():
                stop.set_result(None)

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                # Windows 不支持 add_signal_handler
                pass

        await stop
        logger.info("Relay shutting down...")

    def get_stats(self) -> dict:
        """获取服务器统计信息"""
        return {
            'connections': len(self.connections),
            'players': len(self.registry),
            'messages': self.message_count,
            'dropped': sum(c.dropped for c in self.connections.values()),
        }


def main(argv=None):
    parser = argparse.ArgumentParser(description='Voxel sandbox position relay')
    parser.add_argument('--host', help='Listen address')
    parser.add_argument('--port', type=int, help='Listen port')
    parser.add_argument('--config', help='Path to config.json')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_config(args.config) if args.config else get_config()
    server = SyncServer(config.network)
    asyncio.run(server.start(args.host, args.port))


# 启动入口
if __name__ == '__main__':
    main()
