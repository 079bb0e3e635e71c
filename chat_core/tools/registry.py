"""ToolCapabilitySet：按名称注册、启用/禁用工具能力。"""

from typing import Dict, Iterable, List, Optional, Set

from chat_core.tools.definitions import ToolCapability


class ToolCapabilitySet:
    def __init__(self, tools: Optional[Iterable[ToolCapability]] = None):
        self._tools: Dict[str, ToolCapability] = {}
        self._enabled: Set[str] = set()
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolCapability, enabled: bool = True) -> None:
        """注册工具；同名工具会被替换。"""
        self._tools[tool.name] = tool
        if enabled:
            self._enabled.add(tool.name)
        else:
            self._enabled.discard(tool.name)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._enabled.discard(name)

    def enable(self, name: str) -> bool:
        if name not in self._tools:
            return False
        self._enabled.add(name)
        return True

    def disable(self, name: str) -> None:
        self._enabled.discard(name)

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled and name in self._tools

    def configure(self, names: Iterable[str]) -> None:
        """只启用给定名称的工具，其余全部禁用。"""
        wanted = set(names)
        self._enabled = {name for name in self._tools if name in wanted}

    def get(self, name: str) -> Optional[ToolCapability]:
        return self._tools.get(name)

    def enabled(self) -> List[ToolCapability]:
        # 按注册顺序返回，保证发给模型的工具列表稳定
        return [tool for name, tool in self._tools.items() if name in self._enabled]

    def all(self) -> List[ToolCapability]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
