# -*- coding: utf-8 -*-
"""
实时语音处理器模块

该模块提供实时语音处理器的实现，包括：
- AI语音问诊会话（预约前的宠物信息收集）
"""

from .consultation.session_controller import ConsultationSession, SessionCallbacks

__all__ = [
    'ConsultationSession',
    'SessionCallbacks'
]

__version__ = '1.0.0'
__description__ = '实时语音处理器模块'
