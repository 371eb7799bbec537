"""FastAPI app exposing the TimeDash event channel and message contract."""

from typing import Any, Literal

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from timedash.api.services.coordinator import Coordinator
from timedash.config import load_config
from timedash.watchers.logger import logger

API_HOST = "127.0.0.1"
API_PORT = 5577

# FastAPIアプリケーションのインスタンスを作成
app = FastAPI(
    title="TimeDash Core",
    description="Per-domain browsing time tracking and access policy engine",
)

# グローバルな状態管理
STATE: dict[str, Any] = {
    "coordinator": None,
}


# --- Pydanticモデル定義 ---


class BrowserEvent(BaseModel):
    """Raw browser event forwarded by the extension."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tab_activated", "tab_updated", "tab_removed", "window_focus_changed"]
    tab_id: int | None = Field(default=None, alias="tabId")
    window_id: int | None = Field(default=None, alias="windowId")
    url: str | None = None
    status: str | None = "complete"

    @model_validator(mode="after")
    def tab_events_need_tab_id(self) -> "BrowserEvent":
        """Every tab_* event must name its tab."""
        if self.type.startswith("tab_") and self.tab_id is None:
            msg = f"{self.type} requires tabId"
            raise ValueError(msg)
        return self

    def to_event(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tabId": self.tab_id,
            "windowId": self.window_id,
            "url": self.url,
            "status": self.status,
        }


class Message(BaseModel):
    """Request of the ``{type, ...fields}`` contract; extra fields are kept."""

    model_config = ConfigDict(extra="allow")

    type: str

    @field_validator("type")
    @classmethod
    def type_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            msg = "type must not be empty"
            raise ValueError(msg)
        return v.strip()


# --- アプリケーションのライフサイクルイベント ---


def _coordinator() -> Coordinator:
    coordinator: Coordinator | None = STATE["coordinator"]
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not running")
    return coordinator


# Deprecated on_event usage is temporarily retained for simplicity.
@app.on_event("startup")  # pyright: ignore[reportDeprecated]
async def startup_event() -> None:
    """Build the coordinator unless one was installed beforehand (tests)."""
    if STATE["coordinator"] is None:
        STATE["coordinator"] = Coordinator(load_config())
    await STATE["coordinator"].start()
    logger.info("TimeDash API started")


@app.on_event("shutdown")  # pyright: ignore[reportDeprecated]
async def shutdown_event() -> None:
    coordinator: Coordinator | None = STATE["coordinator"]
    if coordinator is not None:
        await coordinator.stop()
    STATE["coordinator"] = None
    logger.info("TimeDash API stopped")


# --- APIエンドポイント定義 ---


@app.post("/events")
async def ingest_event(event: BrowserEvent) -> dict[str, Any]:
    """Queue a browser event for the single dispatch loop."""
    await _coordinator().submit_event(event.to_event())
    return {"ok": True}


@app.post("/messages")
async def handle_message(message: Message) -> Any:
    """Answer one request of the extension's message contract."""
    return await _coordinator().handle_message(message.model_dump())


@app.get("/status")
async def get_current_status() -> dict[str, Any]:
    """Sessions, pending buffer, live grants and trigger health."""
    return _coordinator().status()


def run() -> None:
    uvicorn.run("timedash.api.main:app", host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run()
