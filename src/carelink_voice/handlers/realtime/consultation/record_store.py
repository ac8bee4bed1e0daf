# -*- coding: utf-8 -*-
"""
记录存储接口

工具调用只通过这里访问用户、宠物和医生数据。真实实现由外部后端提供，
InMemoryRecordStore 用于控制台演示和测试。
"""

from typing import Iterable, List, Optional, Protocol

from loguru import logger

from .models import Actor, Doctor, Pet

MAX_DOCTOR_RESULTS = 5


class RecordStoreError(Exception):
    """记录存储访问失败"""


class NotAuthenticatedError(RecordStoreError):
    """当前没有登录用户"""


class RecordStore(Protocol):
    async def get_current_actor(self) -> Optional[Actor]: ...
    """
    当前登录用户，未登录返回 None（不是错误）
    """
    async def list_pets_for_current_actor(self) -> List[Pet]: ...
    """
    当前用户的宠物；未登录抛出 NotAuthenticatedError，其他失败抛出 RecordStoreError
    """
    async def search_available_doctors(self, query: str) -> List[Doctor]: ...
    """
    可预约医生，按姓名排序，最多5条；query 为空表示不过滤
    """


class InMemoryRecordStore:
    """内存记录存储"""

    def __init__(self, actor: Optional[Actor] = None,
                 pets: Iterable[Pet] = (), doctors: Iterable[Doctor] = ()):
        self.actor = actor
        self.pets: List[Pet] = list(pets)
        self.doctors: List[Doctor] = list(doctors)
        logger.info(f"[RECORD_STORE] 内存存储初始化: {len(self.pets)} 只宠物, {len(self.doctors)} 位医生")

    async def get_current_actor(self) -> Optional[Actor]:
        return self.actor

    async def list_pets_for_current_actor(self) -> List[Pet]:
        if self.actor is None:
            raise NotAuthenticatedError("no authenticated user")
        return [p for p in self.pets if p.owner_id == self.actor.id and p.is_active]

    async def search_available_doctors(self, query: str) -> List[Doctor]:
        needle = (query or "").strip().lower()
        matches = [
            d for d in self.doctors
            if d.is_available and (not needle or needle in d.name.lower())
        ]
        matches.sort(key=lambda d: d.name)
        return matches[:MAX_DOCTOR_RESULTS]
