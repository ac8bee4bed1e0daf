# -*- coding: utf-8 -*-
"""
AI问诊会话的异常定义

致命错误（麦克风、连接）会结束会话并通过 on_error 回调上报；
非致命错误（单个音频块解码失败、工具调用失败、协议异常）只在本地吸收。
"""


class ConsultationError(Exception):
    """问诊会话异常基类"""

    fatal: bool = False


class SessionConnectionError(ConsultationError, ConnectionError):
    """握手或传输失败"""

    fatal = True


class AcquisitionError(SessionConnectionError):
    """麦克风权限被拒绝或设备不可用"""


class DecodeError(ConsultationError, ValueError):
    """服务器下发的音频块无法解码，丢弃该块"""


class ToolResolutionError(ConsultationError):
    """工具调用期间记录存储失败，以 {"error"} 形式回复给模型"""


class ProtocolAnomaly(ConsultationError):
    """协议异常，例如同一会话内重复的 completeConsultation"""
