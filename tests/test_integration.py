"""
Integration tests for the position relay
"""

import asyncio
import json

import msgpack
import pytest
import websockets

from voxcore.config import Config, NetworkConfig, WorldConfig
from voxcore.protocol import decode, encode, update_message
from voxcore.state import Game, RemotePlayer
from voxcore.vector import Vec3
from voxserver.main import MessageValidator, RateLimiter, SyncServer
from voxclient.game_client import ClientGameLoop, SyncClient


class FakeWebSocket:
    """记录发送内容的假连接"""

    def __init__(self):
        self.sent = []

    async def send(self, frame):
        self.sent.append(frame)

    def messages(self):
        return [decode(frame) for frame in self.sent]


class StalledWebSocket:
    """发送永远不会完成的慢连接"""

    def __init__(self):
        self.attempts = 0

    async def send(self, frame):
        self.attempts += 1
        await asyncio.Event().wait()


class BrokenWebSocket:
    """发送时抛出非关闭类错误的连接"""

    async def send(self, frame):
        raise RuntimeError("transport broke")


def update(x, y, z, yaw=0.0, binary=False):
    return encode(update_message(Vec3(x, y, z), Vec3(0.0, yaw, 0.0)), binary)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def close_all(server: SyncServer):
    for conn in list(server.connections.values()):
        await server.handle_disconnect(conn)


# ==================== 注册表与广播 ====================

class TestRelayBroadcast:
    """中继广播测试（不经过网络）"""

    def test_peer_receives_sender_entry(self):
        """测试 B 收到 A 的条目，A 收不到自己的广播"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 2, 3, yaw=0.5))
            await server.flush()

            assert a.websocket.sent == []
            assert b.websocket.messages() == [{
                'type': 'update',
                'players': [{
                    'position': {'x': 1.0, 'y': 2.0, 'z': 3.0},
                    'rotation': {'x': 0.0, 'y': 0.5, 'z': 0.0},
                }],
            }]
            await close_all(server)

        asyncio.run(scenario())

    def test_snapshot_excludes_recipient(self):
        """测试每个接收者的快照不含自己"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())
            c = server.register_connection(FakeWebSocket())

            await server.handle_message(b, update(5, 5, 5))
            await server.handle_message(a, update(1, 1, 1))
            await server.flush()

            last_for_b = b.websocket.messages()[-1]
            last_for_c = c.websocket.messages()[-1]

            assert [p['position']['x'] for p in last_for_b['players']] == [1.0]
            assert sorted(p['position']['x'] for p in last_for_c['players']) == [1.0, 5.0]
            # A 只收到 B 那次广播，其中只有 B
            assert [[p['position']['x'] for p in m['players']]
                    for m in a.websocket.messages()] == [[5.0]]
            await close_all(server)

        asyncio.run(scenario())

    def test_update_overwrites_entry(self):
        """测试重复 update 原地覆盖"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 1, 1))
            first = server.registry.get(a).last_update_time
            await server.handle_message(a, update(2, 2, 2))

            assert len(server.registry) == 1
            entry = server.registry.get(a)
            assert entry.position == Vec3(2.0, 2.0, 2.0)
            assert entry.connection_id == a.conn_id
            assert entry.last_update_time >= first
            await close_all(server)

        asyncio.run(scenario())

    def test_disconnect_removes_entry(self):
        """测试断开后条目立即删除，之后的广播不含 A"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())
            c = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 1, 1))
            await server.flush()
            before_leave = len(c.websocket.sent)

            await server.handle_disconnect(a)
            assert a not in server.registry
            assert a.conn_id not in server.connections

            # 默认不广播离开
            await server.flush()
            assert len(c.websocket.sent) == before_leave

            await server.handle_message(b, update(2, 2, 2))
            await server.flush()

            assert c.websocket.messages()[-1]['players'] == [{
                'position': {'x': 2.0, 'y': 2.0, 'z': 2.0},
                'rotation': {'x': 0.0, 'y': 0.0, 'z': 0.0},
            }]
            await close_all(server)

        asyncio.run(scenario())

    def test_broadcast_on_leave(self):
        """测试开启离开广播"""
        async def scenario():
            server = SyncServer(NetworkConfig(broadcast_on_leave=True))
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 1, 1))
            await server.handle_disconnect(a)
            await server.flush()

            assert [m['players'] for m in b.websocket.messages()] == [
                [{'position': {'x': 1.0, 'y': 1.0, 'z': 1.0},
                  'rotation': {'x': 0.0, 'y': 0.0, 'z': 0.0}}],
                [],
            ]
            await close_all(server)

        asyncio.run(scenario())

    def test_malformed_messages_dropped(self):
        """测试格式错误的消息被静默丢弃"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())

            for message in [
                'not json',
                '[]',
                '{"position": {"x": 1, "y": 2, "z": 3}}',
                '{"type": "chat", "text": "hi"}',
                '{"type": "update", "position": {"x": NaN, "y": 0, "z": 0}, '
                '"rotation": {"x": 0, "y": 0, "z": 0}}',
                '{"type": "update", "position": {"x": 1, "y": 0, "z": 0}}',
                b'\xc1\xc1',
            ]:
                await server.handle_message(a, message)

            await server.flush()
            assert len(server.registry) == 0
            assert a.websocket.sent == []
            assert b.websocket.sent == []
            assert server.get_stats()['messages'] == 0
            await close_all(server)

        asyncio.run(scenario())

    def test_reply_in_peer_framing(self):
        """测试按接收方的帧类型回复"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 1, 1, binary=True))
            await server.handle_message(b, update(2, 2, 2))
            await server.flush()

            assert isinstance(b.websocket.sent[0], str)
            assert isinstance(a.websocket.sent[0], bytes)
            players = msgpack.unpackb(a.websocket.sent[0], raw=False)['players']
            assert players[0]['position'] == {'x': 2.0, 'y': 2.0, 'z': 2.0}
            await close_all(server)

        asyncio.run(scenario())

    def test_slow_peer_does_not_block(self):
        """测试慢连接不阻塞其他连接，队列有界"""
        async def scenario():
            server = SyncServer(NetworkConfig(outbound_queue_size=2))
            a = server.register_connection(FakeWebSocket())
            b = server.register_connection(FakeWebSocket())
            slow = server.register_connection(StalledWebSocket())

            for i in range(5):
                await server.handle_message(a, update(i, 0, 0))
                # 让写任务运行
                await asyncio.sleep(0)

            await asyncio.wait_for(b.queue.join(), timeout=1.0)

            assert len(b.websocket.sent) == 5
            assert slow.queue.qsize() <= 2
            assert slow.dropped >= 2
            assert server.get_stats()['dropped'] == slow.dropped
            await close_all(server)

        asyncio.run(scenario())

    def test_disconnect_cancels_stalled_writer(self):
        """测试断开时取消卡在发送中的写任务"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            slow = server.register_connection(StalledWebSocket())

            await server.handle_message(a, update(1, 0, 0))
            await wait_until(lambda: slow.websocket.attempts == 1)

            await server.handle_disconnect(slow)

            assert slow.writer_task.cancelled()
            assert slow.conn_id not in server.connections
            await close_all(server)

        asyncio.run(scenario())

    def test_failed_writer_does_not_break_disconnect(self):
        """测试写任务异常退出后断开仍然完成"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            a = server.register_connection(FakeWebSocket())
            broken = server.register_connection(BrokenWebSocket())
            b = server.register_connection(FakeWebSocket())

            await server.handle_message(a, update(1, 0, 0))
            await wait_until(lambda: broken.writer_task.done())

            await server.handle_disconnect(broken)
            await server.handle_message(a, update(2, 0, 0))
            await server.flush()

            assert broken.conn_id not in server.connections
            assert broken not in server.registry
            assert len(b.websocket.sent) == 2
            await close_all(server)

        asyncio.run(scenario())

    def test_rate_limit(self):
        """测试超出速率的消息被丢弃"""
        async def scenario():
            server = SyncServer(NetworkConfig(max_requests_per_second=3))
            a = server.register_connection(FakeWebSocket())

            for i in range(5):
                await server.handle_message(a, update(i, 0, 0))

            assert server.get_stats()['messages'] == 3
            assert server.registry.get(a).position.x == 2.0
            await close_all(server)

        asyncio.run(scenario())


class TestSecurityComponents:
    """安全组件测试"""

    def test_rate_limiter(self):
        """测试速率限制器"""
        limiter = RateLimiter(max_requests=10, window=1.0)

        for _ in range(10):
            assert limiter.is_allowed(1)
        assert not limiter.is_allowed(1)
        assert limiter.is_allowed(2)

        limiter.forget(1)
        assert limiter.is_allowed(1)

    def test_message_validator(self):
        """测试消息验证器"""
        assert MessageValidator.validate(update(1, 2, 3)) is not None
        assert MessageValidator.validate(update(1, 2, 3, binary=True)) is not None
        assert MessageValidator.validate('{"type": "invalid"}') is None
        assert MessageValidator.validate(b'\x00' * 20000) is None


# ==================== 客户端 ====================

class TestSyncClientMessages:
    """SyncClient 消息处理测试（不经过网络）"""

    def make_client(self):
        return SyncClient(lambda: (Vec3(), Vec3()), NetworkConfig())

    def test_snapshot_replaces_players(self):
        """测试快照整体替换"""
        client = self.make_client()
        received = []
        client.on_snapshot(received.append)

        assert client.handle_message(json.dumps({
            'type': 'update',
            'players': [
                {'position': {'x': 1, 'y': 2, 'z': 3}, 'rotation': {'x': 0, 'y': 1, 'z': 0}},
                {'position': {'x': 4, 'y': 5, 'z': 6}, 'rotation': {'x': 0, 'y': 0, 'z': 0}},
            ],
        }))
        assert len(client.latest_players) == 2

        assert client.handle_message('{"type": "update", "players": []}')
        assert client.latest_players == []
        assert len(received) == 2
        assert client.snapshot_count == 2

    def test_invalid_snapshot_ignored(self):
        """测试无效快照不影响当前状态"""
        client = self.make_client()
        client.handle_message(json.dumps({
            'type': 'update',
            'players': [{'position': {'x': 1, 'y': 2, 'z': 3}, 'rotation': {'x': 0, 'y': 0, 'z': 0}}],
        }))

        assert not client.handle_message('garbage')
        assert not client.handle_message('{"type": "other", "players": []}')
        assert not client.handle_message('{"type": "update", "players": {}}')
        assert not client.handle_message(json.dumps({
            'type': 'update',
            'players': [{'position': {'x': 'a', 'y': 2, 'z': 3}, 'rotation': {'x': 0, 'y': 0, 'z': 0}}],
        }))

        assert client.latest_players == [RemotePlayer(Vec3(1.0, 2.0, 3.0), Vec3(0.0, 0.0, 0.0))]

    def test_send_without_connection(self):
        """测试未连接时不发送"""
        client = self.make_client()

        assert not asyncio.run(client.send_pose())


# ==================== 真实网络 ====================

class TestNetworkIntegration:
    """websockets 端到端测试"""

    def test_relay_over_websockets(self):
        """测试两个连接经由真实服务器中继"""
        async def scenario():
            server = SyncServer(NetworkConfig(idle_timeout=5.0))
            ws_server = await server.listen('127.0.0.1', 0)
            port = ws_server.sockets[0].getsockname()[1]
            url = f'ws://127.0.0.1:{port}'

            try:
                async with websockets.connect(url) as a, websockets.connect(url) as b:
                    await wait_until(lambda: len(server.connections) == 2)

                    await a.send(update(7, 8, 9))
                    message = json.loads(await asyncio.wait_for(b.recv(), timeout=2.0))

                    assert message['type'] == 'update'
                    assert message['players'] == [{
                        'position': {'x': 7.0, 'y': 8.0, 'z': 9.0},
                        'rotation': {'x': 0.0, 'y': 0.0, 'z': 0.0},
                    }]

                    with pytest.raises(asyncio.TimeoutError):
                        await asyncio.wait_for(a.recv(), timeout=0.2)

                    await a.close()
                    await wait_until(lambda: len(server.registry) == 0)

                    assert server.get_stats()['connections'] == 1
            finally:
                ws_server.close()
                await ws_server.wait_closed()

        asyncio.run(scenario())

    def test_idle_timeout_closes(self):
        """测试空闲超时视为断开"""
        async def scenario():
            server = SyncServer(NetworkConfig(idle_timeout=0.2))
            ws_server = await server.listen('127.0.0.1', 0)
            port = ws_server.sockets[0].getsockname()[1]

            try:
                async with websockets.connect(f'ws://127.0.0.1:{port}') as ws:
                    await wait_until(lambda: len(server.connections) == 1)
                    await ws.send(update(1, 1, 1))
                    await wait_until(lambda: len(server.registry) == 1)

                    await asyncio.wait_for(ws.wait_closed(), timeout=2.0)

                await wait_until(lambda: len(server.connections) == 0)
                assert len(server.registry) == 0
            finally:
                ws_server.close()
                await ws_server.wait_closed()

        asyncio.run(scenario())

    def test_sync_clients_see_each_other(self):
        """测试两个 SyncClient 互相看到对方，并在 tick 时应用到 Game"""
        async def scenario():
            server = SyncServer(NetworkConfig())
            ws_server = await server.listen('127.0.0.1', 0)
            port = ws_server.sockets[0].getsockname()[1]
            url = f'ws://127.0.0.1:{port}'
            net = NetworkConfig(send_interval=0.02)

            config = Config(world=WorldConfig(width=4, depth=4))
            game = Game.create(config, noise_fn=lambda x, z: 0.0)
            client_a = SyncClient(game.player.pose, net)
            client_b = SyncClient(lambda: (Vec3(10.0, 3.0, -4.0), Vec3(0.0, 1.0, 0.0)), net)
            loop = ClientGameLoop(game, client_a)

            try:
                assert await client_a.connect(url)
                assert await client_b.connect(url)

                await wait_until(lambda: client_a.latest_players and client_b.latest_players)

                assert client_a.latest_players[0].position == Vec3(10.0, 3.0, -4.0)
                assert client_b.latest_players[0].position.x == pytest.approx(game.player.position.x)

                await loop.run(max_ticks=1)
                assert game.remote_players[0].rotation == Vec3(0.0, 1.0, 0.0)
            finally:
                await client_a.disconnect()
                await client_b.disconnect()
                ws_server.close()
                await ws_server.wait_closed()

            assert client_a.sent_count > 0

        asyncio.run(scenario())


# ==================== 运行测试 ====================

if __name__ == '__main__':
    pytest.main([__file__, '-v', '--tb=short'])
