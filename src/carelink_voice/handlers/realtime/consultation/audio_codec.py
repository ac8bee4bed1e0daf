# -*- coding: utf-8 -*-
"""
音频编解码

音频格式：
- 上行：16000Hz, 单声道, 16bit, 小端序, base64, MIME 为 audio/pcm;rate=16000
- 下行：24000Hz, 单声道, 16bit, 小端序, base64

编码只做 16bit 量化，不做重采样。
"""

import base64
import binascii
import re
from typing import Optional, Union

import numpy as np
from pydantic import BaseModel, Field

from .errors import DecodeError

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
SAMPLE_WIDTH = 2
INT16_SCALE = 32767.0
INT16_DIVISOR = 32768.0

_RATE_PATTERN = re.compile(r"rate=(\d+)")


class AudioBlob(BaseModel):
    """一次网络发送的音频单位"""

    mime_type: str = Field(serialization_alias="mimeType")
    data: str

    def to_wire(self) -> dict:
        return {"mimeType": self.mime_type, "data": self.data}


def pcm_mime_type(sample_rate: int = INPUT_SAMPLE_RATE) -> str:
    return f"audio/pcm;rate={sample_rate}"


def parse_mime_rate(mime_type: Optional[str], default: int = OUTPUT_SAMPLE_RATE) -> int:
    """从 audio/pcm;rate=24000 这样的 MIME 中取采样率"""
    if not mime_type:
        return default
    match = _RATE_PATTERN.search(mime_type)
    return int(match.group(1)) if match else default


def quantize(samples: Union[np.ndarray, list]) -> np.ndarray:
    """[-1, 1] 浮点采样量化为 int16，超出范围的先截断"""
    data = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(data * INT16_SCALE).astype(np.int16)


def dequantize(pcm: np.ndarray) -> np.ndarray:
    return pcm.astype(np.float32) / INT16_DIVISOR


def encode_frame(samples: Union[np.ndarray, list], sample_rate: int = INPUT_SAMPLE_RATE) -> AudioBlob:
    """
    把一帧浮点采样编码为网络消息中的音频块

    Args:
        samples: [-1, 1] 范围内的浮点采样
        sample_rate: 采样率，只用于 MIME 标记

    Returns:
        AudioBlob: base64 编码的 16bit PCM
    """
    pcm = quantize(samples).astype("<i2")
    return AudioBlob(
        mime_type=pcm_mime_type(sample_rate),
        data=base64.b64encode(pcm.tobytes()).decode("ascii"),
    )


def decode_chunk(data: Union[str, bytes]) -> np.ndarray:
    """
    把服务器下发的 base64 PCM 还原为可播放的 float32 缓冲区

    Args:
        data: base64 编码的 16bit 小端 PCM

    Returns:
        np.ndarray: float32 采样

    Raises:
        DecodeError: base64 非法或字节数不是采样宽度的整数倍
    """
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"invalid base64 audio chunk: {e}") from e

    if len(raw) % SAMPLE_WIDTH != 0:
        raise DecodeError(f"audio chunk length {len(raw)} is not a multiple of {SAMPLE_WIDTH}")

    return dequantize(np.frombuffer(raw, dtype="<i2"))
