import asyncio
import json
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import websockets
from loguru import logger

from .audio_codec import AudioBlob
from .errors import ProtocolAnomaly, SessionConnectionError
from .models import ConsultationConfig, ToolResponse
from .protocol_parser import (
    ServerMessage, build_audio_message, build_setup_message, build_text_turn_message,
    build_tool_response_message, parse_response,
)


class GeminiLiveClient:
    def __init__(self, config: ConsultationConfig, session_id: str) -> None:
        logger.info(f"[LIVE_CLIENT] 初始化客户端 - session_id: {session_id}, 模型: {config.model}")
        self.config = config
        self.session_id = session_id
        self.ws = None
        self.audio_chunks_sent = 0

    @property
    def is_open(self) -> bool:
        return self.ws is not None

    def _connect_url(self) -> str:
        if not self.config.api_key:
            return self.config.ws_url
        separator = "&" if "?" in self.config.ws_url else "?"
        return f"{self.config.ws_url}{separator}{urlencode({'key': self.config.api_key})}"

    async def connect(self, function_declarations: Iterable[Dict[str, Any]]) -> None:
        """建立WebSocket连接并完成 setup 握手"""
        logger.info(f"[LIVE_CLIENT] 开始连接到服务器: {self.config.ws_url}")
        try:
            await asyncio.wait_for(self._handshake(function_declarations), timeout=self.config.connection_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise SessionConnectionError(f"handshake timed out after {self.config.connection_timeout}s") from e
        except (OSError, websockets.exceptions.WebSocketException, ProtocolAnomaly) as e:
            await self.close()
            raise SessionConnectionError(f"handshake failed: {e}") from e
        except asyncio.CancelledError:
            await self.close()
            raise
        logger.info(f"[LIVE_CLIENT] setup 握手完成 - session_id: {self.session_id}")

    async def _handshake(self, function_declarations: Iterable[Dict[str, Any]]) -> None:
        self.ws = await websockets.connect(self._connect_url(), max_size=None)
        logger.debug("[LIVE_CLIENT] WebSocket连接已建立，发送 setup")
        await self.send_json(build_setup_message(self.config, function_declarations))

        while True:
            message = parse_response(await self.ws.recv())
            if message.setup_complete:
                return
            logger.warning(f"[LIVE_CLIENT] 握手期间收到非预期消息: {list(message.raw)}")

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.ws is None:
            raise SessionConnectionError("connection is not open")
        try:
            await self.ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise SessionConnectionError(f"connection closed while sending: {e}") from e

    async def send_audio_data(self, blob: AudioBlob) -> None:
        """发送音频数据"""
        await self.send_json(build_audio_message(blob))
        self.audio_chunks_sent += 1
        if self.config.log_audio_data and self.audio_chunks_sent % 100 == 0:
            logger.debug(f"[LIVE_CLIENT] 已发送 {self.audio_chunks_sent} 个音频块")

    async def send_text_query(self, content: str) -> None:
        """发送文本轮次"""
        logger.info(f"[LIVE_CLIENT] 发送文本轮次: {content[:80]}")
        await self.send_json(build_text_turn_message(content))

    async def send_tool_responses(self, responses: Iterable[ToolResponse]) -> None:
        responses = list(responses)
        logger.debug(f"[LIVE_CLIENT] 发送工具响应: {[r.id for r in responses]}")
        await self.send_json(build_tool_response_message(responses))

    async def receive_server_response(self) -> Optional[ServerMessage]:
        """
        接收一条服务器消息

        Returns:
            Optional[ServerMessage]: 解析结果；服务器正常关闭连接时返回 None

        Raises:
            SessionConnectionError: 连接异常断开
            ProtocolAnomaly: 消息无法解析
        """
        if self.ws is None:
            raise SessionConnectionError("connection is not open")
        try:
            raw = await self.ws.recv()
        except websockets.exceptions.ConnectionClosedOK:
            logger.info(f"[LIVE_CLIENT] 服务器关闭连接 - session_id: {self.session_id}")
            return None
        except websockets.exceptions.ConnectionClosed as e:
            raise SessionConnectionError(f"connection lost: {e}") from e
        return parse_response(raw)

    async def close(self) -> None:
        """关闭WebSocket连接"""
        ws, self.ws = self.ws, None
        if ws is None:
            return
        logger.info(f"[LIVE_CLIENT] 关闭WebSocket连接 - session_id: {self.session_id}")
        try:
            await ws.close()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"[LIVE_CLIENT] 关闭连接时出错: {e}")
