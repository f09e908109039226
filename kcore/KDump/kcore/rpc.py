from aio_pika import Message
from aio_pika.abc import AbstractRobustConnection, AbstractIncomingMessage, AbstractChannel, AbstractQueue
from pydantic import BaseModel

import asyncio, uuid
from typing import Awaitable, Callable, Dict, Generic, TypeVar

_ArgumentT = TypeVar('_ArgumentT', bound=BaseModel)
_ReceiptT = TypeVar('_ReceiptT', BaseModel, None)

class RawRpcClient:
    """Request/reply over the default exchange with a private callback queue."""

    def __init__(self, mq_chan: AbstractChannel | None):
        self._mq_chan = mq_chan
        self._callback_queue: AbstractQueue | None = None
        self._pending: Dict[str, asyncio.Future] = {}

    async def start(self):
        if self._callback_queue is not None:
            raise IOError('RPC client started already')
        self._callback_queue = await self._mq_chan.declare_queue(exclusive=True)
        await self._callback_queue.consume(self._on_reply, no_ack=True)

    async def _on_reply(self, message: AbstractIncomingMessage):
        future = self._pending.pop(message.correlation_id, None)
        # late reply to a call whose caller went away;
        if future is None or future.done():
            return
        future.set_result(message.body)

    async def call(self, routing_key: str, body: bytes) -> bytes:
        correlation_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        try:
            await self._mq_chan.default_exchange.publish(
                Message(body, correlation_id=correlation_id, reply_to=self._callback_queue.name),
                routing_key=routing_key
            )
            return await future
        finally:
            self._pending.pop(correlation_id, None)

class RpcClient(Generic[_ArgumentT, _ReceiptT]):

    def __init__(
        self,
        mq_conn: AbstractRobustConnection,
        rpc_name: str,
        receipt_type: type[BaseModel] | None
    ):
        self._mq_conn = mq_conn
        self._rpc_name = rpc_name
        self._receipt_type = receipt_type
        self._raw: RawRpcClient | None = None

    async def start(self):
        if self._raw is not None:
            raise IOError('RPC client started already')
        self._raw = RawRpcClient(await self._mq_conn.channel())
        await self._raw.start()

    async def __call__(self, argument: _ArgumentT) -> _ReceiptT:
        ret = await self._raw.call(self._rpc_name, argument.model_dump_json().encode('utf-8'))
        if self._receipt_type is None:
            return None
        return self._receipt_type.model_validate_json(ret)

class RpcServer(Generic[_ArgumentT, _ReceiptT]):

    def __init__(
        self,
        mq_conn: AbstractRobustConnection,
        rpc_name: str,
        handler: Callable[[_ArgumentT], Awaitable[_ReceiptT]],
        request_type: type[BaseModel]
    ):
        self._mq_conn = mq_conn
        self._mq_chan: AbstractChannel | None = None
        self._rpc_name = rpc_name
        self._handler = handler
        self._request_type = request_type

    async def start(self):
        if self._mq_chan is not None:
            raise IOError('RPC server started already')
        self._mq_chan = await self._mq_conn.channel()
        await self._mq_chan.set_qos(prefetch_count=1)
        queue = await self._mq_chan.declare_queue(self._rpc_name)
        await queue.consume(self._on_invocation)

    async def _on_invocation(self, message: AbstractIncomingMessage):
        async with message.process(requeue=True):
            ret = await self._handler(self._request_type.model_validate_json(message.body))
            body = 'null' if ret is None else ret.model_dump_json()
            if not message.reply_to:
                return
            await self._mq_chan.default_exchange.publish(
                Message(body=body.encode('utf-8'), correlation_id=message.correlation_id),
                routing_key=message.reply_to
            )
