import asyncio
import socket

import pytest

from errors import BindError
from udp_listener import UDP_BUFFER_SIZE, Datagram, UdpListener


@pytest.fixture
def listener():
    listener = UdpListener(host="127.0.0.1")
    listener.bind(0)
    yield listener
    listener.close()


@pytest.fixture
def sender():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()


class TestUdpListener:
    def test_bind_assigns_port(self, listener):
        host, port = listener.address
        assert host == "127.0.0.1"
        assert port > 0
        assert listener.is_bound

    def test_bind_port_in_use(self, listener):
        other = UdpListener(host="127.0.0.1")
        with pytest.raises(BindError) as exc_info:
            other.bind(listener.address[1])

        assert exc_info.value.port == listener.address[1]
        assert not other.is_bound

    def test_bind_twice_is_an_error(self, listener):
        with pytest.raises(RuntimeError):
            listener.bind(0)

    @pytest.mark.asyncio
    async def test_receive_returns_payload_and_sender(self, listener, sender):
        sender.sendto(b"\x01\x02\x03", listener.address)

        datagram = await asyncio.wait_for(listener.receive(), timeout=2)

        assert datagram == Datagram(payload=b"\x01\x02\x03", sender=sender.getsockname())
        assert datagram.length == 3

    @pytest.mark.asyncio
    async def test_receive_preserves_order(self, listener, sender):
        for i in range(5):
            sender.sendto(bytes([i]) * (i + 1), listener.address)

        received = [
            (await asyncio.wait_for(listener.receive(), timeout=2)).payload
            for _ in range(5)
        ]
        assert received == [bytes([i]) * (i + 1) for i in range(5)]

    @pytest.mark.asyncio
    async def test_empty_datagram(self, listener, sender):
        sender.sendto(b"", listener.address)

        datagram = await asyncio.wait_for(listener.receive(), timeout=2)
        assert datagram.payload == b""

    @pytest.mark.asyncio
    async def test_oversized_datagram_is_truncated(self, listener, sender):
        payload = bytes(range(256)) * 12  # 3072 bytes
        sender.sendto(payload, listener.address)

        datagram = await asyncio.wait_for(listener.receive(), timeout=2)
        assert datagram.length == UDP_BUFFER_SIZE
        assert datagram.payload == payload[:UDP_BUFFER_SIZE]

    @pytest.mark.asyncio
    async def test_receive_can_be_cancelled(self, listener):
        task = asyncio.create_task(listener.receive())
        await asyncio.sleep(0.05)
        assert not task.done()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        listener.close()
        assert not listener.is_bound

    @pytest.mark.asyncio
    async def test_receive_requires_bind(self):
        with pytest.raises(RuntimeError):
            await UdpListener().receive()

    def test_close_is_idempotent(self):
        with UdpListener(host="127.0.0.1") as listener:
            listener.bind(0)
        assert not listener.is_bound
        listener.close()
