"""人设（Persona）system prompt 加载工具。

每个 Persona 对应 prompts/personas/<slug>.md 一个文件；
Base Model 没有额外指令，返回空字符串。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent
PERSONAS_DIR = PROMPTS_DIR / "personas"


@lru_cache(maxsize=None)
def _read_prompt(slug: str) -> str:
    fname = PERSONAS_DIR / f"{slug}.md"
    return fname.read_text(encoding="utf-8").strip()


def load_persona_prompt(persona) -> str:
    """根据 Persona 加载 system prompt 文本。"""

    from chat_core.domain.personas import Persona

    if persona is Persona.NONE:
        return ""
    return _read_prompt(persona.slug)
