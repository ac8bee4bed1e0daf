# -*- coding: utf-8 -*-
"""
播放调度器

维护唯一的播放游标：下一段缓冲区最早可以开始的时间。
缓冲区迟到（游标已过去）时把游标重置为当前时间，接受欠载而不是累积延迟；
否则紧接上一段的结束时间排队，保证无缝、无重叠。
"""

import time
from typing import Callable, Optional, Union

import numpy as np
from loguru import logger


class PlaybackScheduler:
    """解码后输出音频的顺序播放调度"""

    def __init__(self, sample_rate: int = 24000,
                 clock: Optional[Callable[[], float]] = None,
                 sink: Optional[Callable[[np.ndarray, float], None]] = None):
        """
        初始化播放调度器

        Args:
            sample_rate: 输出采样率
            clock: 返回当前时间（秒）的函数，默认 time.monotonic
            sink: 接收 (缓冲区, 开始时间) 的播放端
        """
        self.sample_rate = sample_rate
        self.clock = clock or time.monotonic
        self.sink = sink
        self.cursor = 0.0
        self.underruns = 0

    def duration_of(self, buffer: Union[np.ndarray, float]) -> float:
        if isinstance(buffer, (int, float)):
            return float(buffer)
        return len(buffer) / float(self.sample_rate)

    def schedule(self, buffer: Union[np.ndarray, float]) -> float:
        """
        为一段缓冲区安排开始时间

        Args:
            buffer: 解码后的采样，或直接给出时长（秒）

        Returns:
            float: 开始播放的时间
        """
        now = self.clock()
        if self.cursor < now:
            if self.cursor > 0:
                self.underruns += 1
            self.cursor = now

        start_time = self.cursor
        self.cursor += self.duration_of(buffer)

        if self.sink is not None and not isinstance(buffer, (int, float)):
            self.sink(buffer, start_time)
        return start_time

    def reset(self):
        """打断或停止时清空游标"""
        if self.cursor:
            logger.debug(f"[PLAYBACK] 重置播放游标: {self.cursor:.3f}")
        self.cursor = 0.0
