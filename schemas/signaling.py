from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

NonEmptyStr = Annotated[str, Field(min_length=1)]


class InboundMessage(BaseModel):
    """Envelope for every frame a client sends: `{"event": ..., "data": ...}`."""
    event: NonEmptyStr
    data: Any = None


class JoinRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: NonEmptyStr = Field(..., alias="roomId")
    user_id: NonEmptyStr = Field(..., alias="userId")

    @model_validator(mode="before")
    @classmethod
    def accept_positional_args(cls, value):
        # join-room may also be sent as positional arguments: [roomId, userId]
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise ValueError("join-room expects [roomId, userId]")
            return {"roomId": value[0], "userId": value[1]}
        return value


class _SignalBase(BaseModel):
    # Negotiation data is opaque; unknown fields are kept and forwarded
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    sender_user_id: NonEmptyStr = Field(..., alias="senderUserId")
    target_user_id: NonEmptyStr = Field(..., alias="targetUserId")
    room_id: NonEmptyStr = Field(..., alias="roomId")


class OfferSignal(_SignalBase):
    type: Literal["offer"]
    sdp: Union[Dict[str, Any], str]


class AnswerSignal(_SignalBase):
    type: Literal["answer"]
    sdp: Union[Dict[str, Any], str]


class CandidateSignal(_SignalBase):
    type: Literal["candidate"]
    # null marks end-of-candidates
    candidate: Optional[Union[Dict[str, Any], str]]


SignalPayload = Annotated[
    Union[OfferSignal, AnswerSignal, CandidateSignal],
    Field(discriminator="type"),
]

signal_payload_adapter = TypeAdapter(SignalPayload)


class ExistingUsers(BaseModel):
    users: List[str]


class UserEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")


class SignalError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_user_id: str = Field(..., alias="targetUserId")
    message: str = "Target user not connected"


class ErrorMessage(BaseModel):
    message: str
    event: Optional[str] = None
    details: Optional[List[Dict[str, Any]]] = None
