# -*- coding: utf-8 -*-
"""
AI问诊会话控制器

负责：
1. 管理与流式端点的双向连接生命周期（IDLE → CONNECTING → OPEN → CLOSED，ERRORED）
2. 麦克风 → 分帧 → 编码 → 网络 的上行音频
3. 网络 → 解码 → 播放调度 的下行音频
4. 网络 → 转写拼接 → 界面回调 的文本
5. 网络 → 工具分发 → 记录存储 → 网络 的工具调用

所有处理都运行在同一个事件循环上；PyAudio 的音频线程通过
call_soon_threadsafe 把采样交回事件循环。
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
from loguru import logger

from .audio_codec import decode_chunk, encode_frame
from .audio_framer import AudioFramer
from .errors import AcquisitionError, ConsultationError, DecodeError, ProtocolAnomaly, SessionConnectionError
from .live_client import GeminiLiveClient
from .models import ConsultationConfig, ConsultationResult, Role, SessionState
from .playback_scheduler import PlaybackScheduler
from .protocol_parser import ServerMessage
from .record_store import RecordStore
from .tool_dispatcher import FUNCTION_DECLARATIONS, ToolDispatcher
from .transcript_assembler import TranscriptAssembler

START_FAILED_NOTICE = "Failed to start AI service. Please try again."
CONNECTION_LOST_NOTICE = "Connection to the AI service was lost."


@dataclass
class SessionCallbacks:
    """界面回调，全部可选，均为同步函数"""

    on_connection_change: Optional[Callable[[bool], None]] = None
    on_text: Optional[Callable[[str, bool], None]] = None
    on_input_text: Optional[Callable[[str], None]] = None
    on_audio_data: Optional[Callable[[np.ndarray], None]] = None
    on_complete: Optional[Callable[[ConsultationResult], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_interrupted: Optional[Callable[[], None]] = None


class ConsultationSession:
    """一次AI语音问诊"""

    def __init__(self, config: ConsultationConfig, record_store: RecordStore,
                 callbacks: Optional[SessionCallbacks] = None, *,
                 client: Optional[Any] = None,
                 microphone: Optional[Any] = None,
                 speaker: Optional[Any] = None,
                 clock: Optional[Callable[[], float]] = None,
                 session_id: Optional[str] = None):
        """
        初始化问诊会话

        Args:
            config: 会话配置
            record_store: 记录存储
            callbacks: 界面回调
            client: 流式端点客户端，默认 GeminiLiveClient
            microphone: 麦克风，默认 PyAudio 输入
            speaker: 扬声器，默认 PyAudio 输出
            clock: 播放调度使用的时钟
            session_id: 会话ID
        """
        self.session_id = session_id or str(uuid.uuid4())
        self.config = config
        self.callbacks = callbacks or SessionCallbacks()
        self.state = SessionState.IDLE
        self.muted = False
        self.result: Optional[ConsultationResult] = None

        self.client = client or GeminiLiveClient(config, self.session_id)
        self.microphone = microphone
        self.speaker = speaker

        self.framer = AudioFramer(config.frame_size)
        self.scheduler = PlaybackScheduler(config.output_sample_rate, clock=clock, sink=self._play)
        self.transcript = TranscriptAssembler()
        self.dispatcher = ToolDispatcher(record_store)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._message_lock = asyncio.Lock()
        self._sender_task: Optional[asyncio.Task] = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._torn_down = False

        self.frames_captured = 0
        self.frames_sent = 0

        logger.info(f"[CONSULT_SESSION] 会话已创建 - session_id: {self.session_id}")

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def completed(self) -> bool:
        return self.result is not None

    # ------------------------------------------------------------------
    # 对界面公开的接口
    # ------------------------------------------------------------------
    async def start(self):
        """
        获取麦克风、建立连接并开始流式传输

        失败不会抛出，而是通过 on_error 上报，会话进入 ERRORED 并释放资源。
        """
        if self.state is not SessionState.IDLE:
            logger.warning(f"[CONSULT_SESSION] start() 被忽略，当前状态: {self.state.value}")
            return

        self.state = SessionState.CONNECTING
        self._loop = asyncio.get_running_loop()
        self._outbound = asyncio.Queue()
        logger.info(f"[CONSULT_SESSION] 开始启动会话: {self.session_id}")

        try:
            await self._acquire_devices()
            if self._torn_down:
                return
            await self.client.connect(FUNCTION_DECLARATIONS)
            if self._torn_down:
                await self.client.close()
                return
        except ConsultationError as e:
            await self._fail(e)
            return
        except Exception as e:
            logger.exception(f"[CONSULT_SESSION] 启动时出现未预期的错误: {e}")
            await self._fail(SessionConnectionError(f"failed to start session: {e}"))
            return

        self.state = SessionState.OPEN
        self._emit("on_connection_change", True)
        self._sender_task = asyncio.create_task(self._send_audio_loop(), name=f"consult-tx-{self.session_id}")
        self._receiver_task = asyncio.create_task(self._receive_loop(), name=f"consult-rx-{self.session_id}")
        logger.info(f"[CONSULT_SESSION] 会话已打开: {self.session_id}")

        if self.config.greeting:
            try:
                await self.client.send_text_query(self.config.greeting)
            except SessionConnectionError as e:
                logger.warning(f"[CONSULT_SESSION] 发送开场白失败: {e}")

    async def stop(self):
        """释放麦克风、关闭连接和音频设备；可重复调用，可在错误处理中调用"""
        if self._torn_down:
            logger.debug(f"[CONSULT_SESSION] stop() 重复调用: {self.session_id}")
            return

        receiver = self._receiver_task
        if receiver is None or receiver.done() or receiver is asyncio.current_task():
            await self._teardown()
            return

        # 等正在处理的服务器消息（例如工具响应）发送完毕，但不无限等待
        try:
            await asyncio.wait_for(self._message_lock.acquire(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[CONSULT_SESSION] 服务器消息 {self.config.stop_timeout}s 内未处理完，强制清理: {self.session_id}")
            await self._teardown()
            return
        try:
            await self._teardown()
        finally:
            self._message_lock.release()

    def request_stop(self) -> Optional[asyncio.Task]:
        """在同步回调中安排 stop()，例如 on_complete 内"""
        if self._torn_down or self._loop is None:
            return None
        return self._loop.create_task(self.stop())

    def set_muted(self, muted: bool):
        """静音时仍然采集和分帧，只是不编码、不发送"""
        self.muted = bool(muted)
        logger.info(f"[CONSULT_SESSION] 麦克风{'静音' if self.muted else '取消静音'}")

    async def send_text_response(self, text: str) -> bool:
        """
        注入一条已结束的用户文本轮次（键盘输入）

        Args:
            text: 用户输入

        Returns:
            bool: 是否已发送
        """
        if not text or not text.strip():
            return False
        if self.state is not SessionState.OPEN:
            logger.warning(f"[CONSULT_SESSION] 会话未打开，忽略文本输入: {self.state.value}")
            return False

        self.transcript.commit_turn(Role.USER, text)
        try:
            await self.client.send_text_query(text)
        except SessionConnectionError as e:
            logger.error(f"[CONSULT_SESSION] 发送文本失败: {e}")
            self._emit("on_error", e)
            return False
        return True

    # ------------------------------------------------------------------
    # 上行音频
    # ------------------------------------------------------------------
    async def _acquire_devices(self):
        if self.microphone is None or self.speaker is None:
            from .audio_device import MicrophoneInput, SpeakerOutput

            if self.microphone is None:
                self.microphone = MicrophoneInput(
                    sample_rate=self.config.input_sample_rate,
                    chunk_size=self.config.capture_chunk_size,
                )
            if self.speaker is None:
                self.speaker = SpeakerOutput(sample_rate=self.config.output_sample_rate)

        try:
            await asyncio.to_thread(self.microphone.start, self._on_audio_thread_samples)
            await asyncio.to_thread(self.speaker.start)
        except AcquisitionError:
            raise
        except Exception as e:
            raise AcquisitionError(f"audio device unavailable: {e}") from e
        if self._torn_down:
            # stop() 在获取设备期间被调用
            self._close_device(self.microphone, "microphone")
            self._close_device(self.speaker, "speaker")

    def _on_audio_thread_samples(self, samples: np.ndarray):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_captured, samples)
        except RuntimeError as e:
            logger.debug(f"[CONSULT_SESSION] 事件循环已关闭，丢弃采样: {e}")

    def _on_captured(self, samples: np.ndarray):
        if self.state is not SessionState.OPEN:
            return
        if self._sender_task is None or self._sender_task.done():
            return
        for frame in self.framer.push(samples):
            self.frames_captured += 1
            if self.muted:
                continue
            self._outbound.put_nowait(encode_frame(frame, self.config.input_sample_rate))

    async def _send_audio_loop(self):
        while True:
            blob = await self._outbound.get()
            try:
                await self.client.send_audio_data(blob)
            except SessionConnectionError as e:
                logger.warning(f"[CONSULT_SESSION] 音频发送停止: {e}")
                await self._on_disconnect(e)
                return
            self.frames_sent += 1

    # ------------------------------------------------------------------
    # 服务器消息
    # ------------------------------------------------------------------
    async def _receive_loop(self):
        try:
            while True:
                try:
                    message = await self.client.receive_server_response()
                except ProtocolAnomaly as e:
                    logger.warning(f"[CONSULT_SESSION] 跳过无法解析的服务器消息: {e}")
                    continue
                if message is None:
                    await self._on_disconnect(None)
                    return
                async with self._message_lock:
                    await self._handle_server_message(message)
        except SessionConnectionError as e:
            await self._on_disconnect(e)
        except Exception as e:
            logger.exception(f"[CONSULT_SESSION] 接收循环异常退出: {e}")
            await self._on_disconnect(SessionConnectionError(f"receive loop failed: {e}"))

    async def _handle_server_message(self, message: ServerMessage):
        if message.go_away is not None:
            logger.warning(f"[CONSULT_SESSION] 服务器即将断开: {message.go_away}")

        if message.input_text:
            self.transcript.add_fragment(Role.USER, message.input_text)
            self._emit("on_input_text", message.input_text)

        if message.output_text:
            self.transcript.add_fragment(Role.ASSISTANT, message.output_text)
            self._emit("on_text", message.output_text, False)

        if message.interrupted:
            logger.info("[CONSULT_SESSION] 用户打断了助手语音")
            if self.speaker is not None:
                self.speaker.clear()
            self.scheduler.reset()
            self._emit("on_interrupted")

        for _, data in message.audio_chunks:
            self._handle_audio_chunk(data)

        if message.turn_complete:
            self.transcript.add_fragment(Role.ASSISTANT, "", is_final=True)
            self._emit("on_text", "", True)

        if message.tool_calls:
            await self._handle_tool_calls(message)

    def _handle_audio_chunk(self, data: str):
        try:
            buffer = decode_chunk(data)
        except DecodeError as e:
            logger.warning(f"[CONSULT_SESSION] 丢弃无法解码的音频块: {e}")
            self._emit("on_error", e)
            return
        if len(buffer) == 0:
            return
        self.scheduler.schedule(buffer)
        self._emit("on_audio_data", buffer)

    def _play(self, buffer: np.ndarray, start_time: float):
        if self.speaker is not None:
            self.speaker.play(buffer, start_time)

    async def _handle_tool_calls(self, message: ServerMessage):
        # 按列出的顺序逐个解析，每个调用单独回复
        for call in message.tool_calls:
            outcome = await self.dispatcher.resolve(call)
            if outcome.completion is not None:
                self.result = outcome.completion
                self._emit("on_complete", outcome.completion)
            try:
                await self.client.send_tool_responses([outcome.response])
            except SessionConnectionError as e:
                logger.error(f"[CONSULT_SESSION] 工具响应发送失败 (id={call.id}): {e}")
                return

    # ------------------------------------------------------------------
    # 结束与清理
    # ------------------------------------------------------------------
    async def _on_disconnect(self, error: Optional[SessionConnectionError]):
        if self._torn_down:
            return
        if error is not None:
            logger.error(f"[CONSULT_SESSION] 连接异常断开: {error}")
            self._emit("on_error", error)
        else:
            logger.info(f"[CONSULT_SESSION] 连接已关闭: {self.session_id}")
        self.state = SessionState.CLOSED
        await self._teardown()

    async def _fail(self, error: ConsultationError):
        if self._torn_down:
            logger.info(f"[CONSULT_SESSION] 启动被 stop() 中止: {self.session_id}")
            return
        logger.error(f"[CONSULT_SESSION] 启动失败: {error}")
        self.state = SessionState.ERRORED
        self._emit("on_error", error)
        await self._teardown()

    async def _teardown(self):
        if self._torn_down:
            return
        self._torn_down = True
        if self.state is not SessionState.ERRORED:
            self.state = SessionState.CLOSED
        logger.info(f"[CONSULT_SESSION] 开始清理会话资源: {self.session_id}")

        self._close_device(self.microphone, "microphone")

        current = asyncio.current_task()
        for task in (self._sender_task, self._receiver_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        try:
            await self.client.close()
        except Exception as e:
            logger.error(f"[CONSULT_SESSION] 关闭连接时出错: {e}")

        self._close_device(self.speaker, "speaker")
        self.scheduler.reset()
        self.framer.reset()
        self.transcript.close_all()
        if self._outbound is not None:
            while not self._outbound.empty():
                self._outbound.get_nowait()

        self._emit("on_connection_change", False)
        logger.info(f"[CONSULT_SESSION] 会话资源清理完成: {self.session_id}, 状态: {self.state.value}")

    @staticmethod
    def _close_device(device: Optional[Any], name: str):
        if device is None:
            return
        try:
            device.close()
        except Exception as e:
            logger.error(f"[CONSULT_SESSION] 释放{name}时出错: {e}")

    def _emit(self, name: str, *args):
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.exception(f"[CONSULT_SESSION] 回调 {name} 出错: {e}")
