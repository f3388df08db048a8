from typing import Any

from plugkeep.plugins.base import Plugin


class NoteBook(Plugin):
    """Notes live in host memory; only the key index is kept locally."""

    def __init__(self) -> None:
        super().__init__()
        self.keys: list[str] = []

    async def add(self, key: str, text: str) -> bool:
        response = await self.context.call("memory.write", "put", {"key": key, "value": text})
        if response.success and key not in self.keys:
            self.keys.append(key)
        return response.success

    async def get(self, key: str) -> str | None:
        response = await self.context.call("memory.read", "get", {"key": key})
        return response.payload if response.success else None

    async def health_check(self) -> bool:
        response = await self.context.call("memory.read", "get", {"key": "__ping__"})
        return response.success

    def export_state(self) -> dict[str, Any]:
        return {"keys": list(self.keys)}

    def import_state(self, state: dict[str, Any]) -> None:
        self.keys = list(state.get("keys", []))
