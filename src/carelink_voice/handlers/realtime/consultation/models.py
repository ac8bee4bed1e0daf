# -*- coding: utf-8 -*-
"""
AI问诊会话的数据模型

包括：
1. 会话配置（ConsultationConfig）
2. 会话状态、说话角色枚举
3. 记录存储中的用户、宠物、医生
4. 工具调用请求/响应
5. 问诊结果（ConsultationResult），线上字段为 camelCase
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


DEFAULT_SYSTEM_INSTRUCTION = """
You are a gentle, patient, and professional AI Veterinary Assistant for CareLink.
Your goal is to help the user book a vet appointment by gathering their pet's details, symptoms and preferences.

Protocol:
1. Greet the user warmly (e.g., "Hello, I'm CareLink. I can help you book a vet appointment. First, could you tell me your pet's name and what kind of animal they are?").
2. Call checkAuthStatus. If the user is signed in, call getMyPets and offer the pets you find instead of asking for every detail.
3. Gather pet details: Name, Type (Dog, Cat, etc.), Breed (optional), and Age.
4. Gather key details about the issue: Main symptom, Duration, Severity.
5. Ask if they have a preferred veterinarian, date, or time for the appointment. Use getDoctors to look veterinarians up by name, or with "any" to list who is available.
6. Once you have the information, call the completeConsultation function.

If a tool returns an error, do not read the error out. Apologise briefly and ask the user for the information directly.

Tone: Empathetic, Trustworthy, Calm. Keep sentences short.
"""


class SessionState(str, Enum):
    """会话连接状态"""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class Role(str, Enum):
    """转写片段的说话角色"""

    USER = "user"
    ASSISTANT = "assistant"

    @property
    def opposite(self) -> "Role":
        return Role.ASSISTANT if self is Role.USER else Role.USER


class ConsultationConfig(BaseModel):
    """AI问诊会话配置模型"""

    # WebSocket连接配置
    ws_url: str = Field(
        default="wss://generativelanguage.googleapis.com/ws/"
                "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
    )
    api_key: str = Field(default="")
    model: str = Field(default="models/gemini-2.5-flash-native-audio-preview-09-2025")
    connection_timeout: float = Field(default=15.0, gt=0)
    # stop() 等待正在处理的服务器消息的最长时间
    stop_timeout: float = Field(default=2.0, gt=0)

    # 语音配置
    voice: str = Field(default="Aoede")
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION)
    enable_transcription: bool = Field(default=True)
    greeting: Optional[str] = Field(default=None)

    # 音频配置
    input_sample_rate: int = Field(default=16000)
    output_sample_rate: int = Field(default=24000)
    frame_size: int = Field(default=4096, gt=0)
    capture_chunk_size: int = Field(default=1024, gt=0)

    # 调试配置
    log_audio_data: bool = Field(default=False)


class Actor(BaseModel):
    """当前登录用户"""

    id: str
    email: Optional[str] = None
    is_anonymous: bool = False


class Pet(BaseModel):
    id: str
    owner_id: str
    name: str
    species: str = "Other"
    breed: Optional[str] = None
    age: Optional[float] = None
    gender: Optional[str] = None
    weight_kg: Optional[float] = None
    notes: Optional[str] = None
    is_active: bool = True

    @property
    def age_text(self) -> Optional[str]:
        """与 completeConsultation 的 petAge 一致，用字符串表示年龄，整数不带小数"""
        if self.age is None:
            return None
        return str(int(self.age)) if float(self.age).is_integer() else str(self.age)

    def to_tool_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "species": self.species,
            "breed": self.breed,
            "age": self.age_text,
        }


class Doctor(BaseModel):
    id: str
    name: str
    specialty: Optional[str] = None
    species_treated: List[str] = Field(default_factory=list)
    years_experience: Optional[int] = None
    clinic_name: Optional[str] = None
    is_available: bool = True

    def to_tool_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "specialty": self.specialty,
            "speciesTreated": list(self.species_treated),
            "clinic": self.clinic_name,
        }


class ToolCall(BaseModel):
    """模型发起的函数调用"""

    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResponse(BaseModel):
    """对某个工具调用的唯一响应，id 与调用一致"""

    id: Optional[str] = None
    name: str
    response: Dict[str, Any]

    @property
    def is_error(self) -> bool:
        return "error" in self.response

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "response": self.response}


class ConsultationResult(BaseModel):
    """问诊结束时交给预约流程的结构化结果"""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )

    pet_name: str = Field(alias="petName", min_length=1)
    pet_type: str = Field(alias="petType", min_length=1)
    summary: str = Field(alias="summary", min_length=1)
    pet_breed: Optional[str] = Field(default=None, alias="petBreed")
    pet_age: Optional[str] = Field(default=None, alias="petAge")
    preferred_doctor_id: Optional[str] = Field(default=None, alias="preferredDoctorId")
    # 旧版前端的 preferredDoctor 字段按医生姓名处理
    preferred_doctor_name: Optional[str] = Field(
        default=None,
        alias="preferredDoctorName",
        validation_alias=AliasChoices("preferredDoctorName", "preferredDoctor", "preferred_doctor_name"),
    )
    preferred_date: Optional[str] = Field(default=None, alias="preferredDate")
    preferred_time: Optional[str] = Field(default=None, alias="preferredTime")

    def to_booking_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
