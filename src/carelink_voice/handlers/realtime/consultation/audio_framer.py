# -*- coding: utf-8 -*-
"""
麦克风音频分帧器

把麦克风回调送来的任意长度采样块拼接成固定长度的帧（默认4096个采样），
每一帧就是一次网络发送的单位。
"""

from typing import List, Union

import numpy as np


class AudioFramer:
    """把连续的 float32 采样流切分为定长帧"""

    def __init__(self, frame_size: int = 4096):
        """
        初始化分帧器

        Args:
            frame_size: 每帧采样数
        """
        if frame_size <= 0:
            raise ValueError("frame_size must be > 0")
        self.frame_size = frame_size
        self._buffer = np.zeros(frame_size, dtype=np.float32)
        self._index = 0
        self.frames_emitted = 0

    @property
    def pending(self) -> int:
        """缓冲区中尚未凑成整帧的采样数"""
        return self._index

    def push(self, samples: Union[np.ndarray, List[float]]) -> List[np.ndarray]:
        """
        追加一段采样，返回本次凑满的所有帧（按采集顺序）

        Args:
            samples: 一维 float 采样，多声道输入取第一声道

        Returns:
            List[np.ndarray]: 新产生的帧，每帧都是独立拷贝
        """
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim > 1:
            data = data[:, 0]

        frames = []
        offset = 0
        while offset < len(data):
            take = min(self.frame_size - self._index, len(data) - offset)
            self._buffer[self._index:self._index + take] = data[offset:offset + take]
            self._index += take
            offset += take
            if self._index >= self.frame_size:
                frames.append(self._buffer.copy())
                self._index = 0
        self.frames_emitted += len(frames)
        return frames

    def push_bytes(self, raw: bytes) -> List[np.ndarray]:
        """追加 float32 小端字节流（PyAudio paFloat32 输入）"""
        return self.push(np.frombuffer(raw, dtype="<f4"))

    def reset(self):
        """丢弃未凑满的采样"""
        self._index = 0
