# -*- coding: utf-8 -*-
"""
转写拼接器

把用户（语音识别）和助手（语音合成原文）的增量片段合并为完整的消息轮次：
- 每个角色同一时刻最多一条未关闭消息
- 同角色的连续片段原样拼接，不插入分隔符
- 收到终结片段，或对方角色的片段到达时，关闭当前消息（模拟插话/打断）
- 空文本的终结片段不创建消息，但会关闭已打开的消息
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from .models import Role


@dataclass
class TranscriptFragment:
    role: Role
    text: str
    is_final: bool = False


@dataclass
class TranscriptMessage:
    role: Role
    text: str = ""
    closed: bool = False
    fragment_count: int = 0


@dataclass
class TranscriptAssembler:
    """按到达顺序维护每个角色的打开消息和已关闭的完整记录"""

    messages: List[TranscriptMessage] = field(default_factory=list)
    _open: Dict[Role, TranscriptMessage] = field(default_factory=dict)

    def open_message(self, role: Role) -> Optional[TranscriptMessage]:
        return self._open.get(Role(role))

    def add_fragment(self, role: Role, text: str, is_final: bool = False) -> Optional[TranscriptMessage]:
        """
        处理一个增量片段

        Args:
            role: 说话角色
            text: 片段文本，原样拼接
            is_final: 是否为终结片段

        Returns:
            Optional[TranscriptMessage]: 片段落入的消息；空终结片段且没有打开消息时为 None
        """
        return self.add(TranscriptFragment(Role(role), text or "", is_final))

    def add(self, fragment: TranscriptFragment) -> Optional[TranscriptMessage]:
        role = fragment.role

        # 对方角色的消息被打断
        self._close(role.opposite)

        message = self._open.get(role)
        if fragment.text:
            if message is None:
                message = TranscriptMessage(role=role)
                self._open[role] = message
            message.text += fragment.text
            message.fragment_count += 1

        if fragment.is_final:
            self._close(role)
        return message

    def commit_turn(self, role: Role, text: str) -> TranscriptMessage:
        """追加一条已经结束的完整轮次（键盘输入的文本）"""
        role = Role(role)
        self._close(role.opposite)
        self._close(role)
        message = TranscriptMessage(role=role, text=text, closed=True, fragment_count=1)
        self.messages.append(message)
        return message

    def close_all(self):
        for role in (Role.USER, Role.ASSISTANT):
            self._close(role)

    def snapshot(self) -> List[Dict[str, str]]:
        """已关闭消息加上仍在进行中的消息，用于界面展示"""
        items = [{"role": m.role.value, "text": m.text} for m in self.messages]
        for role in (Role.USER, Role.ASSISTANT):
            message = self._open.get(role)
            if message is not None:
                items.append({"role": role.value, "text": message.text})
        return items

    def _close(self, role: Role):
        message = self._open.pop(role, None)
        if message is None:
            return
        message.closed = True
        self.messages.append(message)
        logger.debug(f"[TRANSCRIPT] {role.value} 消息关闭: {message.text[:80]}")
