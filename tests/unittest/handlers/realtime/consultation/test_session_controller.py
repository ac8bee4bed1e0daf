# -*- coding: utf-8 -*-
"""
AI问诊会话控制器单元测试

使用假的流式端点客户端、麦克风和扬声器，测试:
1. 启动、停止和重复停止
2. 启动失败（握手、麦克风）
3. 静音只拦截发送，不影响分帧
4. 工具调用的响应与问诊完成回调的顺序
5. 音频解码失败、打断、断线
6. 键盘文本输入
"""

import asyncio
import base64
import json
import os
import sys
import unittest

import numpy as np

# 添加 src 目录到Python路径
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', '..', '..', '..', 'src')))

from carelink_voice.handlers.realtime.consultation.errors import (
    AcquisitionError, DecodeError, ProtocolAnomaly, SessionConnectionError,
)
from carelink_voice.handlers.realtime.consultation.models import (
    Actor, ConsultationConfig, Doctor, Role, SessionState,
)
from carelink_voice.handlers.realtime.consultation.protocol_parser import parse_response
from carelink_voice.handlers.realtime.consultation.record_store import InMemoryRecordStore
from carelink_voice.handlers.realtime.consultation.session_controller import (
    ConsultationSession, SessionCallbacks,
)
from carelink_voice.handlers.realtime.consultation.tool_dispatcher import (
    FUNCTION_DECLARATIONS, NOT_SIGNED_IN_MESSAGE,
)


def server_message(payload):
    return parse_response(json.dumps(payload))


def tool_call_message(*calls):
    return server_message({"toolCall": {"functionCalls": [
        {"id": call_id, "name": name, "args": args} for call_id, name, args in calls
    ]}})


def audio_message(samples):
    data = base64.b64encode(np.asarray(samples, dtype="<i2").tobytes()).decode("ascii")
    return server_message({"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": data}},
    ]}}})


async def settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeLiveClient:
    """记录所有发送内容，服务器消息由测试放入队列"""

    def __init__(self, connect_error=None, hold_connect=False):
        self.connect_error = connect_error
        self.hold_connect = hold_connect
        self.incoming = asyncio.Queue()
        self.idle = asyncio.Event()
        self.connect_started = asyncio.Event()
        self.release_connect = asyncio.Event()
        self.declarations = None
        self.events = []
        self.audio = []
        self.text_queries = []
        self.tool_responses = []
        self.close_count = 0
        self.fail_sends = False
        self.fail_audio = False

    async def connect(self, function_declarations):
        self.connect_started.set()
        self.declarations = list(function_declarations)
        if self.hold_connect:
            await self.release_connect.wait()
        if self.connect_error is not None:
            raise self.connect_error

    async def send_audio_data(self, blob):
        if self.fail_audio:
            raise SessionConnectionError("connection closed while sending")
        self.audio.append(blob)

    async def send_text_query(self, content):
        if self.fail_sends:
            raise SessionConnectionError("connection closed while sending")
        self.text_queries.append(content)

    async def send_tool_responses(self, responses):
        for response in responses:
            self.events.append(("tool_response", response.id))
            self.tool_responses.append(response)

    async def receive_server_response(self):
        if self.incoming.empty():
            self.idle.set()
        item = await self.incoming.get()
        self.idle.clear()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.events.append(("close",))
        self.close_count += 1

    async def deliver(self, message):
        """放入一条服务器消息并等待会话处理完"""
        self.idle.clear()
        await self.incoming.put(message)
        await asyncio.wait_for(self.idle.wait(), timeout=1)


class FakeMicrophone:
    def __init__(self, error=None):
        self.error = error
        self.callback = None
        self.close_count = 0

    def start(self, callback):
        if self.error is not None:
            raise self.error
        self.callback = callback

    def close(self):
        self.close_count += 1


class FakeSpeaker:
    def __init__(self):
        self.played = []
        self.clear_count = 0
        self.close_count = 0
        self.started = False

    def start(self):
        self.started = True

    def play(self, buffer, start_time):
        self.played.append((len(buffer), start_time))

    def clear(self):
        self.clear_count += 1

    def close(self):
        self.close_count += 1


class HangingRecordStore(InMemoryRecordStore):
    """医生查询永远不返回"""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()

    async def search_available_doctors(self, query):
        self.entered.set()
        await asyncio.Event().wait()


class CallbackRecorder:
    def __init__(self):
        self.connection = []
        self.texts = []
        self.input_texts = []
        self.audio = []
        self.completed = []
        self.errors = []
        self.interrupted = 0
        self.closed = asyncio.Event()

    def callbacks(self, **overrides) -> SessionCallbacks:
        kwargs = dict(
            on_connection_change=self.on_connection_change,
            on_text=lambda text, final: self.texts.append((text, final)),
            on_input_text=self.input_texts.append,
            on_audio_data=self.audio.append,
            on_complete=self.completed.append,
            on_error=self.errors.append,
            on_interrupted=self.on_interrupted,
        )
        kwargs.update(overrides)
        return SessionCallbacks(**kwargs)

    def on_connection_change(self, connected):
        self.connection.append(connected)
        if not connected:
            self.closed.set()

    def on_interrupted(self):
        self.interrupted += 1


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """创建带假设备的会话"""

    actor = None
    greeting = None

    def setUp(self):
        self.config = ConsultationConfig(api_key="test-key", frame_size=4, greeting=self.greeting)
        self.store = InMemoryRecordStore(
            actor=self.actor,
            doctors=[Doctor(id="d1", name="Dr. Sarah Smith"), Doctor(id="d2", name="Dr. Emily Chen")],
        )
        self.recorder = CallbackRecorder()
        self.client = FakeLiveClient()
        self.microphone = FakeMicrophone()
        self.speaker = FakeSpeaker()

    def make_session(self, **callback_overrides) -> ConsultationSession:
        return ConsultationSession(
            self.config, self.store, self.recorder.callbacks(**callback_overrides),
            client=self.client, microphone=self.microphone, speaker=self.speaker,
            clock=lambda: 100.0, session_id="test-session",
        )

    async def start_session(self, **callback_overrides) -> ConsultationSession:
        self.session = self.make_session(**callback_overrides)
        await self.session.start()
        return self.session

    async def asyncTearDown(self):
        session = getattr(self, "session", None)
        if session is not None:
            await session.stop()


class TestSessionLifecycle(SessionTestCase):
    """会话生命周期测试"""

    greeting = "Hello"

    async def test_start_opens_session(self):
        session = await self.start_session()

        self.assertIs(session.state, SessionState.OPEN)
        self.assertTrue(session.is_connected)
        self.assertEqual(self.recorder.connection, [True])
        self.assertEqual(self.client.declarations, FUNCTION_DECLARATIONS)
        self.assertIsNotNone(self.microphone.callback)
        self.assertTrue(self.speaker.started)
        self.assertEqual(self.client.text_queries, ["Hello"])

    async def test_start_twice_is_ignored(self):
        session = await self.start_session()
        await session.start()
        self.assertEqual(self.recorder.connection, [True])

    async def test_stop_twice_reports_disconnect_once(self):
        session = await self.start_session()

        await session.stop()
        await session.stop()

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.connection, [True, False])
        self.assertEqual(self.client.close_count, 1)
        self.assertEqual(self.microphone.close_count, 1)
        self.assertEqual(self.speaker.close_count, 1)
        self.assertTrue(session._sender_task.done())
        self.assertTrue(session._receiver_task.done())

    async def test_stop_before_start_resolves(self):
        """握手进行中调用 stop()"""
        self.client = FakeLiveClient(hold_connect=True)
        self.session = self.make_session()
        start_task = asyncio.create_task(self.session.start())
        await asyncio.wait_for(self.client.connect_started.wait(), timeout=1)

        await self.session.stop()
        self.client.release_connect.set()
        await asyncio.wait_for(start_task, timeout=1)

        self.assertIs(self.session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.connection, [False])
        self.assertEqual(self.recorder.errors, [])
        self.assertIsNone(self.session._receiver_task)
        self.assertEqual(self.client.text_queries, [])

    async def test_stop_without_start(self):
        self.session = self.make_session()
        await self.session.stop()
        await self.session.stop()
        self.assertEqual(self.recorder.connection, [False])

    async def test_handshake_failure(self):
        error = SessionConnectionError("handshake timed out")
        self.client = FakeLiveClient(connect_error=error)
        session = await self.start_session()

        self.assertIs(session.state, SessionState.ERRORED)
        self.assertEqual(self.recorder.errors, [error])
        self.assertTrue(self.recorder.errors[0].fatal)
        self.assertEqual(self.recorder.connection, [False])
        self.assertEqual(self.microphone.close_count, 1)

        await session.stop()
        self.assertEqual(self.recorder.connection, [False])

    async def test_unexpected_connect_error_is_wrapped(self):
        self.client = FakeLiveClient(connect_error=RuntimeError("boom"))
        session = await self.start_session()

        self.assertIs(session.state, SessionState.ERRORED)
        self.assertIsInstance(self.recorder.errors[0], SessionConnectionError)

    async def test_microphone_failure(self):
        """麦克风不可用时不会建立连接"""
        self.microphone = FakeMicrophone(error=PermissionError("denied"))
        session = await self.start_session()

        self.assertIs(session.state, SessionState.ERRORED)
        self.assertEqual(len(self.recorder.errors), 1)
        self.assertIsInstance(self.recorder.errors[0], AcquisitionError)
        self.assertIsNone(self.client.declarations)
        self.assertEqual(self.recorder.connection, [False])

    async def test_clean_server_close(self):
        session = await self.start_session()
        await self.client.incoming.put(None)
        await asyncio.wait_for(self.recorder.closed.wait(), timeout=1)

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.errors, [])
        self.assertEqual(self.recorder.connection, [True, False])

    async def test_connection_lost(self):
        session = await self.start_session()
        error = SessionConnectionError("connection lost")
        await self.client.incoming.put(error)
        await asyncio.wait_for(self.recorder.closed.wait(), timeout=1)

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.errors, [error])
        self.assertEqual(self.recorder.connection, [True, False])
        self.assertEqual(self.microphone.close_count, 1)

        await session.stop()
        self.assertEqual(self.recorder.connection, [True, False])


class TestAudioPath(SessionTestCase):
    """上行与下行音频测试"""

    async def capture(self, samples):
        self.microphone.callback(np.asarray(samples, dtype=np.float32))
        await settle()

    async def test_frames_are_encoded_and_sent(self):
        session = await self.start_session()

        await self.capture([0.1, 0.2, 0.3])
        self.assertEqual(self.client.audio, [])
        await self.capture([0.4, 0.5, 0.6, 0.7, 0.8])

        self.assertEqual(len(self.client.audio), 2)
        self.assertEqual(self.client.audio[0].mime_type, "audio/pcm;rate=16000")
        self.assertEqual(session.frames_sent, 2)

    async def test_mute_gates_transmission_only(self):
        """静音时继续分帧，但不发送"""
        session = await self.start_session()

        session.set_muted(True)
        await self.capture(np.zeros(8))
        self.assertEqual(session.frames_captured, 2)
        self.assertEqual(self.client.audio, [])

        session.set_muted(False)
        await self.capture(np.zeros(4))
        self.assertEqual(session.frames_captured, 3)
        self.assertEqual(len(self.client.audio), 1)

    async def test_audio_is_scheduled_gaplessly(self):
        session = await self.start_session()

        await self.client.deliver(audio_message(np.zeros(2400)))
        await self.client.deliver(audio_message(np.zeros(4800)))

        self.assertEqual([n for n, _ in self.speaker.played], [2400, 4800])
        self.assertEqual(self.speaker.played[0][1], 100.0)
        self.assertAlmostEqual(self.speaker.played[1][1], 100.1)
        self.assertEqual([len(b) for b in self.recorder.audio], [2400, 4800])
        self.assertAlmostEqual(session.scheduler.cursor, 100.3)

    async def test_decode_error_is_not_fatal(self):
        session = await self.start_session()

        await self.client.deliver(server_message({"serverContent": {"modelTurn": {"parts": [
            {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AQID"}},
        ]}}}))
        await self.client.deliver(audio_message([1, 2, 3, 4]))

        self.assertEqual(len(self.recorder.errors), 1)
        self.assertIsInstance(self.recorder.errors[0], DecodeError)
        self.assertFalse(self.recorder.errors[0].fatal)
        self.assertIs(session.state, SessionState.OPEN)
        self.assertEqual(len(self.speaker.played), 1)

    async def test_interruption_flushes_playback(self):
        session = await self.start_session()
        await self.client.deliver(audio_message(np.zeros(2400)))

        await self.client.deliver(server_message({"serverContent": {"interrupted": True}}))

        self.assertEqual(self.recorder.interrupted, 1)
        self.assertEqual(self.speaker.clear_count, 1)
        self.assertEqual(session.scheduler.cursor, 0.0)

    async def test_audio_send_failure_closes_session(self):
        """音频发送失败时关闭会话，之后的采样不再进入发送队列"""
        session = await self.start_session()
        self.client.fail_audio = True

        await self.capture(np.zeros(4))
        await asyncio.wait_for(self.recorder.closed.wait(), timeout=1)
        await self.capture(np.zeros(8))

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.connection, [True, False])
        self.assertIsInstance(self.recorder.errors[0], SessionConnectionError)
        self.assertTrue(session._outbound.empty())
        self.assertEqual(session.frames_sent, 0)

    async def test_malformed_message_is_skipped(self):
        session = await self.start_session()
        await self.client.deliver(ProtocolAnomaly("malformed server message"))
        await self.client.deliver(server_message({"serverContent": {"outputTranscription": {"text": "Hi"}}}))

        self.assertIs(session.state, SessionState.OPEN)
        self.assertEqual(self.recorder.texts, [("Hi", False)])


class TestTranscripts(SessionTestCase):
    """转写与文本输入测试"""

    async def test_input_before_output_in_one_message(self):
        session = await self.start_session()

        await self.client.deliver(server_message({"serverContent": {"inputTranscription": {"text": "Max is a dog"}}}))
        await self.client.deliver(server_message({"serverContent": {
            "inputTranscription": {"text": "and he's been vomiting"},
            "outputTranscription": {"text": "Oh no."},
        }}))
        await self.client.deliver(server_message({"serverContent": {"turnComplete": True}}))

        self.assertEqual(self.recorder.input_texts, ["Max is a dog", "and he's been vomiting"])
        self.assertEqual(self.recorder.texts, [("Oh no.", False), ("", True)])
        self.assertEqual([(m.role, m.text) for m in session.transcript.messages], [
            (Role.USER, "Max is a dogand he's been vomiting"),
            (Role.ASSISTANT, "Oh no."),
        ])

    async def test_send_text_response(self):
        session = await self.start_session()

        self.assertTrue(await session.send_text_response("Her name is Luna"))
        self.assertFalse(await session.send_text_response("   "))

        self.assertEqual(self.client.text_queries, ["Her name is Luna"])
        self.assertEqual(session.transcript.messages[-1].text, "Her name is Luna")
        self.assertEqual(session.transcript.messages[-1].role, Role.USER)

    async def test_send_text_response_when_closed(self):
        session = await self.start_session()
        await session.stop()
        self.assertFalse(await session.send_text_response("hello"))
        self.assertEqual(self.client.text_queries, [])

    async def test_send_text_response_failure(self):
        session = await self.start_session()
        self.client.fail_sends = True

        self.assertFalse(await session.send_text_response("hello"))
        self.assertIsInstance(self.recorder.errors[0], SessionConnectionError)


class TestToolCalls(SessionTestCase):
    """工具调用测试"""

    async def test_tool_response_carries_call_id(self):
        await self.start_session()

        await self.client.deliver(tool_call_message(
            ("t1", "getDoctors", {"query": "smith"}),
            ("t2", "checkAuthStatus", {}),
        ))

        self.assertEqual([r.id for r in self.client.tool_responses], ["t1", "t2"])
        doctors = self.client.tool_responses[0].response["doctors"]
        self.assertEqual([d["name"] for d in doctors], ["Dr. Sarah Smith"])
        self.assertEqual(self.client.tool_responses[1].response, {"isAuthenticated": False})

    async def test_get_my_pets_unauthenticated_keeps_session_open(self):
        """未登录时回复错误，会话继续，之后仍可完成问诊"""
        session = await self.start_session()

        await self.client.deliver(tool_call_message(("p1", "getMyPets", {})))

        self.assertEqual(self.client.tool_responses[0].response, {"error": NOT_SIGNED_IN_MESSAGE})
        self.assertIs(session.state, SessionState.OPEN)
        self.assertEqual(self.recorder.errors, [])

        await self.client.deliver(tool_call_message(
            ("c1", "completeConsultation", {"petName": "Max", "petType": "Dog", "summary": "Vomiting"}),
        ))
        self.assertEqual(len(self.recorder.completed), 1)
        self.assertEqual(self.recorder.completed[0].pet_name, "Max")

    async def test_completion_fires_before_ack_then_stops(self):
        """on_complete 先于工具响应触发；在回调里请求停止，响应仍会在清理前发出"""
        acks_at_completion = []

        def on_complete(result):
            acks_at_completion.append(len(self.client.tool_responses))
            self.recorder.completed.append(result)
            self.session.request_stop()

        session = await self.start_session(on_complete=on_complete)
        await self.client.incoming.put(tool_call_message(
            ("c9", "completeConsultation", {"petName": "Luna", "petType": "Cat", "summary": "Sneezing"}),
        ))
        await asyncio.wait_for(self.recorder.closed.wait(), timeout=1)

        self.assertEqual(acks_at_completion, [0])
        self.assertEqual(self.client.events, [("tool_response", "c9"), ("close",)])
        self.assertEqual(self.client.tool_responses[0].response, {"result": "Consultation completed."})
        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(session.result.pet_name, "Luna")
        self.assertEqual(self.recorder.connection, [True, False])

    async def test_stop_while_tool_call_is_resolving(self):
        """记录存储一直不返回时，stop() 在超时后仍然完成清理"""
        self.config = ConsultationConfig(api_key="test-key", frame_size=4, stop_timeout=0.05)
        self.store = HangingRecordStore()
        session = await self.start_session()

        await self.client.incoming.put(tool_call_message(("h1", "getDoctors", {"query": "any"})))
        await asyncio.wait_for(self.store.entered.wait(), timeout=1)

        await asyncio.wait_for(session.stop(), timeout=1)

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.connection, [True, False])
        self.assertEqual(self.client.close_count, 1)
        self.assertEqual(self.microphone.close_count, 1)
        self.assertTrue(session._receiver_task.done())
        self.assertEqual(self.client.tool_responses, [])

    async def test_receiver_failure_tears_down(self):
        """接收循环出现意外异常时，会话关闭并上报，而不是停留在 OPEN"""
        session = await self.start_session()

        await self.client.incoming.put(RuntimeError("unexpected payload"))
        await asyncio.wait_for(self.recorder.closed.wait(), timeout=1)

        self.assertIs(session.state, SessionState.CLOSED)
        self.assertEqual(self.recorder.connection, [True, False])
        self.assertEqual(len(self.recorder.errors), 1)
        self.assertIsInstance(self.recorder.errors[0], SessionConnectionError)
        self.assertEqual(self.client.close_count, 1)

    async def test_wrongly_shaped_message_is_skipped(self):
        """字段类型不对的服务器消息被跳过，后续工具调用照常回复"""
        session = await self.start_session()

        with self.assertRaises(ProtocolAnomaly) as ctx:
            parse_response('{"serverContent": "x"}')
        await self.client.deliver(ctx.exception)
        await self.client.deliver(tool_call_message(("t1", "checkAuthStatus", {})))

        self.assertIs(session.state, SessionState.OPEN)
        self.assertEqual([r.id for r in self.client.tool_responses], ["t1"])

    async def test_duplicate_completion_fires_once(self):
        session = await self.start_session()
        args = {"petName": "Max", "petType": "Dog", "summary": "Limping"}

        await self.client.deliver(tool_call_message(("c1", "completeConsultation", args)))
        await self.client.deliver(tool_call_message(("c2", "completeConsultation", args)))

        self.assertEqual(len(self.recorder.completed), 1)
        self.assertEqual([r.id for r in self.client.tool_responses], ["c1", "c2"])
        self.assertTrue(session.completed)


class TestSignedInToolCalls(SessionTestCase):
    actor = Actor(id="user-1")

    async def test_check_auth_status_signed_in(self):
        await self.start_session()
        await self.client.deliver(tool_call_message(("a1", "checkAuthStatus", {})))
        self.assertEqual(self.client.tool_responses[0].response, {"isAuthenticated": True, "userId": "user-1"})


if __name__ == '__main__':
    unittest.main()
