"""Voice personas: a prebuilt voice plus style attributes.

A persona's name is part of the page-audio cache key, so two personas that
share a base voice but differ in style are cached independently.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel

import config

PREBUILT_VOICES = {
    "Zephyr", "Puck", "Charon", "Kore", "Fenrir", "Leda", "Orus", "Aoede",
    "Callirrhoe", "Autonoe", "Enceladus", "Iapetus", "Umbriel", "Algieba",
    "Despina", "Erinome", "Algenib", "Rasalgethi", "Laomedeia", "Achernar",
    "Alnilam", "Schedar", "Gacrux", "Pulcherrima", "Achird", "Zubenelgenubi",
    "Vindemiatrix", "Sadachbia", "Sadaltager", "Sulafat",
}


class VoicePersona(BaseModel):
    """Named voice configuration used for text-to-speech."""
    name: str
    base_voice: str
    id: Optional[str] = None
    tone: Optional[str] = None
    pace: Optional[str] = None
    accent: Optional[str] = None
    instructions: Optional[str] = None

    @property
    def cache_key(self) -> str:
        return self.name

    def style_prompt(self) -> Optional[str]:
        """Natural-language delivery instruction, or None for a plain read."""
        traits = []
        if self.tone:
            traits.append(f"in a {self.tone} tone")
        if self.pace:
            traits.append(f"at a {self.pace} pace")
        if self.accent:
            traits.append(f"with a {self.accent} accent")

        if not traits and not self.instructions:
            return None

        prompt = "Read the following text aloud"
        if traits:
            prompt += " " + ", ".join(traits)
        prompt += "."
        if self.instructions:
            prompt += f" {self.instructions.strip()}"
        return prompt

    def voice_settings(self) -> Dict[str, Any]:
        """Settings object persisted alongside generated audio."""
        settings = {"voiceName": self.base_voice}
        for key in ("tone", "pace", "accent", "instructions"):
            value = getattr(self, key)
            if value:
                settings[key] = value
        return settings


def resolve_persona(persona: "VoicePersona | str | None") -> VoicePersona:
    """Accept a persona, a persona/voice name, or None for the default voice."""
    if isinstance(persona, VoicePersona):
        return persona

    name = (persona or config.DEFAULT_VOICE).strip()
    if not name:
        name = config.DEFAULT_VOICE
    base_voice = name if name in PREBUILT_VOICES else config.DEFAULT_VOICE
    return VoicePersona(name=name, base_voice=base_voice)
