# -*- coding: utf-8 -*-
"""
工具调用分发器

模型只能调用固定的四个工具，每个工具都有固定的解析策略。
任何失败都不会越过工具边界抛出，而是以 {"error": ...} 回复给模型，
让模型自己用语音引导用户；每个调用都必须且只能得到一个响应。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from .errors import ProtocolAnomaly, ToolResolutionError
from .models import ConsultationResult, ToolCall, ToolResponse
from .record_store import MAX_DOCTOR_RESULTS, NotAuthenticatedError, RecordStore


class ToolName(str, Enum):
    GET_MY_PETS = "getMyPets"
    CHECK_AUTH_STATUS = "checkAuthStatus"
    GET_DOCTORS = "getDoctors"
    COMPLETE_CONSULTATION = "completeConsultation"

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["ToolName"]:
        try:
            return cls(name)
        except ValueError:
            return None


NOT_SIGNED_IN_MESSAGE = "The user is not signed in, so saved pets are not available."
PETS_UNAVAILABLE_MESSAGE = "Unable to load the user's pets right now."
DOCTORS_UNAVAILABLE_MESSAGE = "Unable to load veterinarians right now."
COMPLETED_MESSAGE = "Consultation completed."
ALREADY_COMPLETED_MESSAGE = "Consultation already completed."
NO_FILTER_QUERIES = ("", "any")


def _string(description: str) -> Dict[str, str]:
    return {"type": "STRING", "description": description}


# 会话开始时发送的固定工具声明
FUNCTION_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": ToolName.GET_MY_PETS.value,
        "description": "Get the pets registered to the signed-in user. Returns an error if the user is not signed in.",
    },
    {
        "name": ToolName.CHECK_AUTH_STATUS.value,
        "description": "Check whether the user is signed in.",
    },
    {
        "name": ToolName.GET_DOCTORS.value,
        "description": "Find available veterinarians. Pass part of a name, or \"any\" to list who is available.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "query": _string("Part of the veterinarian's name, or \"any\"."),
            },
        },
    },
    {
        "name": ToolName.COMPLETE_CONSULTATION.value,
        "description": (
            "Call this when you have gathered enough information to book a vet appointment. "
            "You need to collect pet details, symptoms, and optionally preferred doctor, date, and time."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "petName": _string("The name of the pet."),
                "petType": _string("The type of animal (e.g., Dog, Cat, Bird)."),
                "petBreed": _string("The breed of the pet, if known."),
                "petAge": _string("The age of the pet."),
                "summary": _string("A detailed summary of the pet's symptoms, duration, and severity."),
                "preferredDoctorId": _string("The id of the veterinarian returned by getDoctors, if any."),
                "preferredDoctorName": _string("The name of the veterinarian the user wants to see, if any."),
                "preferredDate": _string(
                    "The preferred date for the appointment (e.g., 'tomorrow', 'next Monday', or a specific date)."
                ),
                "preferredTime": _string("The preferred time for the appointment (e.g., 'morning', '2 PM')."),
            },
            "required": ["summary", "petName", "petType"],
        },
    },
]


@dataclass
class ToolOutcome:
    """一次工具调用的结果；completion 仅在问诊首次完成时非空"""

    response: ToolResponse
    completion: Optional[ConsultationResult] = None


class ToolDispatcher:
    """把模型的函数调用解析到记录存储"""

    def __init__(self, record_store: RecordStore):
        self.record_store = record_store
        self.completed = False
        self.calls_resolved = 0
        self._handlers: Dict[ToolName, Callable[[ToolCall], Awaitable[ToolOutcome]]] = {
            ToolName.GET_MY_PETS: self._get_my_pets,
            ToolName.CHECK_AUTH_STATUS: self._check_auth_status,
            ToolName.GET_DOCTORS: self._get_doctors,
            ToolName.COMPLETE_CONSULTATION: self._complete_consultation,
        }
        missing = set(ToolName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for tools: {sorted(t.value for t in missing)}")

    async def resolve(self, call: ToolCall) -> ToolOutcome:
        """
        解析一个工具调用

        Args:
            call: 模型发来的调用

        Returns:
            ToolOutcome: 总是带有与调用同 id 的响应
        """
        self.calls_resolved += 1
        tool = ToolName.parse(call.name)
        if tool is None:
            anomaly = ProtocolAnomaly(f"unknown tool: {call.name}")
            logger.error(f"[TOOL_DISPATCH] {anomaly} (id={call.id})")
            return self._error(call, f"Unknown function: {call.name}")

        logger.info(f"[TOOL_DISPATCH] 调用 {tool.value} (id={call.id}) 参数: {call.args}")
        try:
            return await self._handlers[tool](call)
        except ToolResolutionError as e:
            logger.warning(f"[TOOL_DISPATCH] {tool.value} 解析失败: {e}")
            return self._error(call, str(e))
        except Exception as e:
            logger.exception(f"[TOOL_DISPATCH] {tool.value} 出现未预期的错误: {e}")
            return self._error(call, f"{tool.value} failed.")

    async def _get_my_pets(self, call: ToolCall) -> ToolOutcome:
        try:
            actor = await self.record_store.get_current_actor()
            if actor is None:
                return self._error(call, NOT_SIGNED_IN_MESSAGE)
            pets = await self.record_store.list_pets_for_current_actor()
        except NotAuthenticatedError:
            return self._error(call, NOT_SIGNED_IN_MESSAGE)
        except Exception as e:
            raise ToolResolutionError(PETS_UNAVAILABLE_MESSAGE) from e

        payload: Dict[str, Any] = {"pets": [p.to_tool_payload() for p in pets]}
        if not pets:
            payload["message"] = "The user has no registered pets."
        return self._ok(call, payload)

    async def _check_auth_status(self, call: ToolCall) -> ToolOutcome:
        try:
            actor = await self.record_store.get_current_actor()
        except Exception as e:
            logger.warning(f"[TOOL_DISPATCH] 查询登录状态失败，按未登录处理: {e}")
            actor = None

        if actor is None:
            return self._ok(call, {"isAuthenticated": False})
        return self._ok(call, {"isAuthenticated": True, "userId": actor.id})

    async def _get_doctors(self, call: ToolCall) -> ToolOutcome:
        query = str(call.args.get("query") or "").strip()
        if query.lower() in NO_FILTER_QUERIES:
            query = ""

        try:
            doctors = await self.record_store.search_available_doctors(query)
        except Exception as e:
            raise ToolResolutionError(DOCTORS_UNAVAILABLE_MESSAGE) from e

        doctors = sorted(doctors, key=lambda d: d.name)[:MAX_DOCTOR_RESULTS]
        payload: Dict[str, Any] = {"doctors": [d.to_tool_payload() for d in doctors]}
        if not doctors:
            payload["message"] = f"No available veterinarians matched '{query}'." if query \
                else "No veterinarians are available right now."
        return self._ok(call, payload)

    async def _complete_consultation(self, call: ToolCall) -> ToolOutcome:
        if self.completed:
            anomaly = ProtocolAnomaly("completeConsultation called again after completion")
            logger.warning(f"[TOOL_DISPATCH] {anomaly} (id={call.id})")
            return self._ok(call, {"result": ALREADY_COMPLETED_MESSAGE})

        try:
            result = ConsultationResult.model_validate(call.args)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            logger.warning(f"[TOOL_DISPATCH] completeConsultation 参数不完整: {fields}")
            return self._error(call, f"Missing or invalid fields: {', '.join(fields)}")

        self.completed = True
        logger.info(f"[TOOL_DISPATCH] 问诊完成: {result.pet_name} ({result.pet_type})")
        return ToolOutcome(
            response=ToolResponse(id=call.id, name=call.name, response={"result": COMPLETED_MESSAGE}),
            completion=result,
        )

    @staticmethod
    def _ok(call: ToolCall, payload: Dict[str, Any]) -> ToolOutcome:
        return ToolOutcome(response=ToolResponse(id=call.id, name=call.name, response=payload))

    @staticmethod
    def _error(call: ToolCall, message: str) -> ToolOutcome:
        return ToolOutcome(response=ToolResponse(id=call.id, name=call.name, response={"error": message}))
