# -*- coding: utf-8 -*-
"""
AI语音问诊会话模块

该模块提供AI语音问诊的完整实现，包括：
1. 麦克风音频分帧和编码上行
2. WebSocket连接和协议处理
3. 下行语音的解码和无缝播放调度
4. 用户/助手转写的轮次拼接
5. 工具调用（宠物、登录状态、医生、问诊完成）
6. 会话生命周期管理

音频格式支持：
- 上行：16000Hz, 单声道, 16bit PCM, base64
- 下行：24000Hz, 单声道, 16bit PCM, base64
"""

from .audio_codec import AudioBlob, decode_chunk, encode_frame
from .audio_framer import AudioFramer
from .errors import (
    AcquisitionError, ConsultationError, DecodeError, ProtocolAnomaly,
    SessionConnectionError, ToolResolutionError,
)
from .live_client import GeminiLiveClient
from .models import (
    Actor, ConsultationConfig, ConsultationResult, Doctor, Pet, Role, SessionState,
    ToolCall, ToolResponse,
)
from .playback_scheduler import PlaybackScheduler
from .record_store import InMemoryRecordStore, RecordStore, RecordStoreError
from .session_controller import ConsultationSession, SessionCallbacks
from .tool_dispatcher import FUNCTION_DECLARATIONS, ToolDispatcher, ToolName
from .transcript_assembler import TranscriptAssembler, TranscriptFragment, TranscriptMessage

__all__ = [
    'ConsultationSession',
    'SessionCallbacks',
    'ConsultationConfig',
    'ConsultationResult',
    'GeminiLiveClient',
    'AudioFramer',
    'AudioBlob',
    'encode_frame',
    'decode_chunk',
    'PlaybackScheduler',
    'TranscriptAssembler',
    'TranscriptFragment',
    'TranscriptMessage',
    'ToolDispatcher',
    'ToolName',
    'FUNCTION_DECLARATIONS',
    'RecordStore',
    'RecordStoreError',
    'InMemoryRecordStore',
    'Actor',
    'Pet',
    'Doctor',
    'Role',
    'SessionState',
    'ToolCall',
    'ToolResponse',
    'ConsultationError',
    'SessionConnectionError',
    'AcquisitionError',
    'DecodeError',
    'ToolResolutionError',
    'ProtocolAnomaly'
]

__version__ = '1.0.0'
__description__ = 'AI语音问诊会话'
__audio_formats__ = {
    'input': {'sample_rate': 16000, 'channels': 1, 'bit_depth': 16, 'format': 'int16', 'endian': 'little'},
    'output': {'sample_rate': 24000, 'channels': 1, 'bit_depth': 16, 'format': 'int16', 'endian': 'little'}
}
