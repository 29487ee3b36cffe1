"""
Pydantic models for the Gemini Live bidirectional streaming protocol.

This module provides type-safe models for the JSON messages exchanged over the
live WebSocket, including both outgoing (client) and incoming (server) formats.
Field names follow the wire format, so models serialize directly with
``model_dump_json(exclude_none=True)``.
"""

import base64
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from voice_session.config.constants import (
    DEFAULT_VOICE_NAME,
    INPUT_MIME_TYPE,
    OUTPUT_SAMPLE_RATE,
)
from voice_session.models.envelopes import ToolCallEnvelope, ToolResultEnvelope
from voice_session.models.transcript import Source

RATE_PATTERN = re.compile(r"rate=(\d+)")


# Shared content structures
class InlineData(BaseModel):
    """Base64-encoded binary payload with its mime type."""
    mimeType: str = ""
    data: str

    @property
    def sample_rate(self) -> int:
        """Sample rate declared in the mime type, e.g. audio/pcm;rate=24000."""
        match = RATE_PATTERN.search(self.mimeType)
        return int(match.group(1)) if match else OUTPUT_SAMPLE_RATE

    @property
    def is_audio(self) -> bool:
        return self.mimeType.startswith("audio/") or not self.mimeType

    def decode(self) -> bytes:
        return base64.b64decode(self.data)


class Part(BaseModel):
    """One part of a content turn: text or inline data."""
    text: Optional[str] = None
    inlineData: Optional[InlineData] = None


class Content(BaseModel):
    """A turn of content."""
    role: Optional[str] = None
    parts: List[Part] = Field(default_factory=list)


# Outgoing messages
class PrebuiltVoiceConfig(BaseModel):
    voiceName: str = DEFAULT_VOICE_NAME


class VoiceConfig(BaseModel):
    prebuiltVoiceConfig: PrebuiltVoiceConfig = Field(default_factory=PrebuiltVoiceConfig)


class SpeechConfig(BaseModel):
    voiceConfig: VoiceConfig = Field(default_factory=VoiceConfig)


class GenerationConfig(BaseModel):
    responseModalities: List[str] = Field(default_factory=lambda: ["AUDIO"])
    speechConfig: SpeechConfig = Field(default_factory=SpeechConfig)


class Setup(BaseModel):
    """Session configuration, sent once as the first message."""
    model: str
    generationConfig: GenerationConfig = Field(default_factory=GenerationConfig)
    systemInstruction: Optional[Content] = None
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    inputAudioTranscription: Dict[str, Any] = Field(default_factory=dict)
    outputAudioTranscription: Dict[str, Any] = Field(default_factory=dict)


class SetupMessage(BaseModel):
    setup: Setup

    @classmethod
    def build(
        cls,
        model: str,
        system_instruction: str,
        function_declarations: List[Dict[str, Any]],
        voice_name: str = DEFAULT_VOICE_NAME,
    ) -> "SetupMessage":
        """Build the setup message with google search and the given function declarations."""
        if not model.startswith("models/"):
            model = f"models/{model}"
        tools: List[Dict[str, Any]] = [{"googleSearch": {}}]
        if function_declarations:
            tools.append({"functionDeclarations": function_declarations})
        return cls(
            setup=Setup(
                model=model,
                generationConfig=GenerationConfig(
                    speechConfig=SpeechConfig(
                        voiceConfig=VoiceConfig(
                            prebuiltVoiceConfig=PrebuiltVoiceConfig(voiceName=voice_name)
                        )
                    )
                ),
                systemInstruction=Content(parts=[Part(text=system_instruction)]),
                tools=tools,
            )
        )


class MediaChunk(BaseModel):
    mimeType: str = INPUT_MIME_TYPE
    data: str


class RealtimeInput(BaseModel):
    mediaChunks: List[MediaChunk]


class RealtimeInputMessage(BaseModel):
    """Outbound microphone audio."""
    realtimeInput: RealtimeInput

    @classmethod
    def from_pcm(cls, pcm: bytes, mime_type: str = INPUT_MIME_TYPE) -> "RealtimeInputMessage":
        data = base64.b64encode(pcm).decode("utf-8")
        return cls(realtimeInput=RealtimeInput(mediaChunks=[MediaChunk(mimeType=mime_type, data=data)]))


class ClientContent(BaseModel):
    turns: List[Content]
    turnComplete: bool = True


class ClientContentMessage(BaseModel):
    """Outbound text turn."""
    clientContent: ClientContent

    @classmethod
    def user_text(cls, text: str) -> "ClientContentMessage":
        return cls(
            clientContent=ClientContent(turns=[Content(role="user", parts=[Part(text=text)])])
        )


class FunctionResponse(BaseModel):
    id: str
    name: str
    response: Dict[str, Any]


class ToolResponse(BaseModel):
    functionResponses: List[FunctionResponse]


class ToolResponseMessage(BaseModel):
    """Outbound reply to a function call."""
    toolResponse: ToolResponse

    @classmethod
    def from_result(cls, result: ToolResultEnvelope) -> "ToolResponseMessage":
        return cls(
            toolResponse=ToolResponse(
                functionResponses=[
                    FunctionResponse(id=result.id, name=result.name, response={"result": result.result})
                ]
            )
        )


# Incoming messages
class Transcription(BaseModel):
    text: Optional[str] = None


class WebSource(BaseModel):
    uri: Optional[str] = None
    title: Optional[str] = None


class GroundingChunk(BaseModel):
    web: Optional[WebSource] = None


class GroundingMetadata(BaseModel):
    groundingChunks: List[GroundingChunk] = Field(default_factory=list)

    def sources(self) -> List[Source]:
        """Web citations with a uri, de-duplicated by uri in arrival order."""
        seen = set()
        result = []
        for chunk in self.groundingChunks:
            web = chunk.web
            if not web or not web.uri or web.uri in seen:
                continue
            seen.add(web.uri)
            result.append(Source(uri=web.uri, title=web.title or web.uri))
        return result


class ServerContent(BaseModel):
    modelTurn: Optional[Content] = None
    turnComplete: bool = False
    interrupted: bool = False
    inputTranscription: Optional[Transcription] = None
    outputTranscription: Optional[Transcription] = None
    groundingMetadata: Optional[GroundingMetadata] = None


class FunctionCall(BaseModel):
    id: str
    name: str
    args: Optional[Dict[str, Any]] = None

    def to_envelope(self) -> ToolCallEnvelope:
        return ToolCallEnvelope(id=self.id, name=self.name, args=self.args or {})


class ToolCall(BaseModel):
    functionCalls: List[FunctionCall] = Field(default_factory=list)


class ToolCallCancellation(BaseModel):
    ids: List[str] = Field(default_factory=list)


class GoAway(BaseModel):
    timeLeft: Optional[str] = None


class LiveServerMessage(BaseModel):
    """Any message received from the live endpoint. Unknown fields are ignored."""
    setupComplete: Optional[Dict[str, Any]] = None
    serverContent: Optional[ServerContent] = None
    toolCall: Optional[ToolCall] = None
    toolCallCancellation: Optional[ToolCallCancellation] = None
    goAway: Optional[GoAway] = None

    def audio_chunks(self) -> List[InlineData]:
        """Inline audio payloads of the model turn, in order."""
        if not self.serverContent or not self.serverContent.modelTurn:
            return []
        return [
            part.inlineData
            for part in self.serverContent.modelTurn.parts
            if part.inlineData is not None and part.inlineData.is_audio
        ]
