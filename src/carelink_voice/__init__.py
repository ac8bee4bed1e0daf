# -*- coding: utf-8 -*-
"""
CareLink AI语音问诊客户端
"""

__version__ = '1.0.0'
