# -*- coding: utf-8 -*-
"""
流式端点的消息协议

客户端消息：
- setup          会话配置（系统指令、音色、输出模态、工具声明、转写开关）
- realtimeInput  实时音频块
- clientContent  文本轮次（键盘输入、开场白）
- toolResponse   工具调用响应

服务器消息：
- setupComplete  握手确认
- serverContent  模型音频、输入/输出转写、turnComplete、interrupted
- toolCall       函数调用请求
- goAway         服务器即将断开
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from .audio_codec import AudioBlob
from .errors import ProtocolAnomaly
from .models import ConsultationConfig, ToolCall, ToolResponse


def build_setup_message(config: ConsultationConfig,
                        function_declarations: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    创建 setup 消息

    Args:
        config: 会话配置
        function_declarations: 工具声明

    Returns:
        Dict[str, Any]: 待发送的 JSON 对象
    """
    setup: Dict[str, Any] = {
        "model": config.model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice}},
            },
        },
        "systemInstruction": {"parts": [{"text": config.system_instruction}]},
        "tools": [{"functionDeclarations": list(function_declarations)}],
    }
    if config.enable_transcription:
        setup["inputAudioTranscription"] = {}
        setup["outputAudioTranscription"] = {}
    return {"setup": setup}


def build_audio_message(blob: AudioBlob) -> Dict[str, Any]:
    return {"realtimeInput": {"audio": blob.to_wire()}}


def build_text_turn_message(text: str) -> Dict[str, Any]:
    """已结束的用户文本轮次"""
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": True,
        }
    }


def build_tool_response_message(responses: Iterable[ToolResponse]) -> Dict[str, Any]:
    return {"toolResponse": {"functionResponses": [r.to_wire() for r in responses]}}


@dataclass
class ServerMessage:
    """解析后的服务器消息，一条消息可以同时携带多种内容"""

    setup_complete: bool = False
    input_text: Optional[str] = None
    output_text: Optional[str] = None
    audio_chunks: List[Tuple[Optional[str], str]] = field(default_factory=list)
    turn_complete: bool = False
    interrupted: bool = False
    tool_calls: List[ToolCall] = field(default_factory=list)
    go_away: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.setup_complete or self.input_text or self.output_text or self.audio_chunks
                    or self.turn_complete or self.interrupted or self.tool_calls or self.go_away is not None)


def parse_response(res: Union[str, bytes, bytearray]) -> ServerMessage:
    """
    解析服务器消息

    Args:
        res: WebSocket 收到的文本或二进制帧（UTF-8 JSON）

    Returns:
        ServerMessage: 解析结果

    Raises:
        ProtocolAnomaly: 不是合法的 JSON 对象，或字段类型与协议不符
    """
    try:
        if isinstance(res, (bytes, bytearray)):
            res = res.decode("utf-8")
        payload = json.loads(res)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolAnomaly(f"malformed server message: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolAnomaly(f"unexpected server message type: {type(payload).__name__}")

    message = ServerMessage(raw=payload)
    message.setup_complete = "setupComplete" in payload

    content = _section(payload, "serverContent")
    message.input_text = _text(_section(content, "inputTranscription"))
    message.output_text = _text(_section(content, "outputTranscription"))
    message.turn_complete = bool(content.get("turnComplete"))
    message.interrupted = bool(content.get("interrupted"))
    for part in _items(_section(content, "modelTurn"), "parts"):
        if not isinstance(part, dict):
            continue
        inline = _section(part, "inlineData")
        data = inline.get("data")
        if data is None:
            continue
        if not isinstance(data, str):
            raise ProtocolAnomaly(f"inlineData.data must be a string, got {type(data).__name__}")
        mime_type = inline.get("mimeType")
        message.audio_chunks.append((mime_type if isinstance(mime_type, str) else None, data))

    for call in _items(_section(payload, "toolCall"), "functionCalls"):
        if not isinstance(call, dict):
            continue
        call_id = call.get("id")
        args = call.get("args")
        try:
            message.tool_calls.append(ToolCall(
                id=None if call_id is None else str(call_id),
                name=str(call.get("name") or ""),
                args=args if isinstance(args, dict) else {},
            ))
        except ValidationError as e:
            raise ProtocolAnomaly(f"malformed function call: {e}") from e

    if "goAway" in payload:
        message.go_away = _section(payload, "goAway")
    return message


def _section(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    """取嵌套对象；缺失或为 null 时返回空字典，类型不对抛出 ProtocolAnomaly"""
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolAnomaly(f"{key} must be an object, got {type(value).__name__}")
    return value


def _items(container: Dict[str, Any], key: str) -> List[Any]:
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolAnomaly(f"{key} must be a list, got {type(value).__name__}")
    return value


def _text(section: Dict[str, Any]) -> Optional[str]:
    text = section.get("text")
    if text is not None and not isinstance(text, str):
        raise ProtocolAnomaly(f"transcription text must be a string, got {type(text).__name__}")
    return text


def is_audio_response(message: ServerMessage) -> bool:
    return bool(message.audio_chunks)


def is_tool_call(message: ServerMessage) -> bool:
    return bool(message.tool_calls)
