import threading
from typing import Callable, Optional

import numpy as np
import pyaudio
from loguru import logger

from .errors import AcquisitionError


class MicrophoneInput:
    """麦克风输入，采集 float32 单声道采样"""

    def __init__(self, sample_rate: int = 16000, channels: int = 1, chunk_size: int = 1024):
        """
        初始化麦克风

        Args:
            sample_rate: 采样率
            channels: 声道数
            chunk_size: 每次回调的采样数
        """
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size

        self.audio: Optional[pyaudio.PyAudio] = None
        self.stream = None
        self.is_recording = False
        self.audio_callback: Optional[Callable[[np.ndarray], None]] = None

    def start(self, callback: Callable[[np.ndarray], None]):
        """
        打开输入流并开始采集，回调运行在 PyAudio 的音频线程

        Raises:
            AcquisitionError: 没有权限或设备不可用
        """
        if self.is_recording:
            logger.warning("[MIC] Recording is already in progress")
            return
        self.audio_callback = callback

        def stream_callback(in_data, frame_count, time_info, status):
            if self.is_recording and self.audio_callback and in_data:
                samples = np.frombuffer(in_data, dtype=np.float32)
                if self.channels > 1:
                    samples = samples.reshape(-1, self.channels)
                self.audio_callback(samples)
            return (None, pyaudio.paContinue)

        try:
            self.audio = pyaudio.PyAudio()
            self.stream = self.audio.open(
                format=pyaudio.paFloat32,
                channels=self.channels,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.chunk_size,
                stream_callback=stream_callback,
            )
            self.is_recording = True
            self.stream.start_stream()
        except (OSError, IOError) as e:
            self.close()
            raise AcquisitionError(f"microphone unavailable: {e}") from e

        logger.info(f"[MIC] Recording started: {self.sample_rate}Hz, {self.channels} channels, chunk_size={self.chunk_size}")

    def close(self):
        """停止采集并释放设备，可重复调用"""
        self.is_recording = False
        if self.stream:
            try:
                self.stream.stop_stream()
                self.stream.close()
            except (OSError, IOError) as e:
                logger.error(f"[MIC] Error closing audio stream: {e}")
            finally:
                self.stream = None
        if self.audio:
            try:
                self.audio.terminate()
            finally:
                self.audio = None
            logger.info("[MIC] Recording stopped")


class SpeakerOutput:
    """扬声器输出，按调度顺序无缝播放 float32 缓冲区"""

    def __init__(self, sample_rate: int = 24000, channels: int = 1, chunk_size: int = 1024):
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size

        self.audio: Optional[pyaudio.PyAudio] = None
        self.stream = None
        self.is_playing = False
        self.audio_buffer = bytearray()
        self.buffer_lock = threading.Lock()

    def start(self):
        if self.is_playing:
            return

        def stream_callback(in_data, frame_count, time_info, status):
            size = frame_count * self.channels * 4
            with self.buffer_lock:
                data = bytes(self.audio_buffer[:size])
                del self.audio_buffer[:size]
            if len(data) < size:
                # 欠载时补静音
                data += b"\x00" * (size - len(data))
            return (data, pyaudio.paContinue)

        try:
            self.audio = pyaudio.PyAudio()
            self.stream = self.audio.open(
                format=pyaudio.paFloat32,
                channels=self.channels,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=self.chunk_size,
                stream_callback=stream_callback,
            )
            self.is_playing = True
            self.stream.start_stream()
        except (OSError, IOError) as e:
            self.close()
            raise AcquisitionError(f"audio output unavailable: {e}") from e

        logger.info(f"[SPEAKER] Playback started: {self.sample_rate}Hz")

    def play(self, buffer: np.ndarray, start_time: float = 0.0):
        """把缓冲区追加到播放队列末尾"""
        with self.buffer_lock:
            self.audio_buffer.extend(np.asarray(buffer, dtype="<f4").tobytes())

    def clear(self):
        with self.buffer_lock:
            self.audio_buffer.clear()

    def close(self):
        self.is_playing = False
        if self.stream:
            try:
                self.stream.stop_stream()
                self.stream.close()
            except (OSError, IOError) as e:
                logger.error(f"[SPEAKER] Error closing audio stream: {e}")
            finally:
                self.stream = None
        if self.audio:
            try:
                self.audio.terminate()
            finally:
                self.audio = None
            logger.info("[SPEAKER] Playback stopped")
        self.clear()
