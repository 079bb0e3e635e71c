"""AI 人设（Persona）定义。

Persona 的值即为持久化时使用的名称；对应的 system prompt
由 chat_core.prompts 从 markdown 文件加载。
"""

from enum import Enum


class Persona(str, Enum):
    NONE = "Base Model"
    THERAPIST = "Welcoming Therapist"
    PROFESSOR = "Distinguished Professor"
    TECH_LEAD = "Tech Lead"
    MUSICIAN = "World-Class Musician"
    COMEDIAN = "Wise Comedian"

    @property
    def slug(self) -> str:
        return self.name.lower()

    @property
    def system_prompt(self) -> str:
        from chat_core.prompts import load_persona_prompt

        return load_persona_prompt(self)

    @classmethod
    def parse(cls, value: str) -> "Persona":
        """按名称或枚举名解析；未知值回落到 Base Model。"""
        for persona in cls:
            if value in (persona.value, persona.name, persona.slug):
                return persona
        return cls.NONE
