"""LM Studio (OpenAI-compatible HTTP) provider.

No subprocess: each turn POSTs the whole conversation to
``{baseUrl}/chat/completions`` with ``stream: true`` and reads the
server-sent-event response line by line.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from eve.adapters.events import ResultEvent, text_delta
from eve.engine.yaml_config import DEFAULT_HTTP_CONTEXT_WINDOW, LMStudioConfig
from eve.shared.models.message import AssistantTurn, Attachment

from .base import ModelInfo, Provider, ProviderContext, TurnPhase, inline_text_attachments

logger = logging.getLogger(__name__)


class LMStudioProvider(Provider):
    """Provider backed by an OpenAI-compatible chat-completions server."""

    kind = "lmstudio"
    label = "LM Studio"

    def __init__(self, session, context: ProviderContext | None = None) -> None:
        super().__init__(session, context)
        self.config: LMStudioConfig = self.context.options.get("lmstudio") or LMStudioConfig()
        self.conversation: list[dict[str, str]] = []
        self._http: aiohttp.ClientSession | None = None
        self._stream_task: asyncio.Task | None = None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )
        return self._http

    @property
    def context_window(self) -> int:
        model = self.config.find_model(self.session.model)
        return model.context_window if model else DEFAULT_HTTP_CONTEXT_WINDOW

    async def send(self, text: str, attachments: list[Attachment]) -> None:
        if not self.begin_turn():
            return
        self.conversation.append({
            "role": "user",
            "content": inline_text_attachments(text, attachments),
        })
        payload = {
            "model": self.session.model,
            "messages": list(self.conversation),
            "stream": True,
            "temperature": self.config.temperature,
        }
        self._stream_task = asyncio.create_task(self._stream(payload))

    async def _stream(self, payload: dict[str, Any]) -> None:
        url = f"{self.config.base_url}/chat/completions"
        body = json.dumps(payload).encode("utf-8")
        turn = AssistantTurn()
        logger.info("[lmstudio] POST %s model=%s session=%s", url, payload["model"], self.session.session_id)
        try:
            async with self._client().post(
                url, data=body, headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status >= 400:
                    detail = (await resp.text())[:200]
                    self.fail_turn(f"LM Studio connection error: HTTP {resp.status} {detail}".rstrip())
                    return
                self.phase = TurnPhase.STREAMING
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        continue
                    try:
                        finished = self._apply_chunk(turn, json.loads(data))
                    except ValueError as exc:
                        logger.warning("[lmstudio] bad SSE chunk (%s): %s", exc, data[:200])
                        self.fail_turn(f"LM Studio parse error: {exc}")
                        return
                    if finished:
                        return
            if self.turn_open:
                # Stream ended without finish_reason; keep what arrived.
                self._complete(turn, None)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("[lmstudio] request failed session=%s: %s", self.session.session_id, exc)
            self.fail_turn(f"LM Studio connection error: {exc or type(exc).__name__}")
        except Exception as exc:
            logger.exception("[lmstudio] stream handling failed session=%s", self.session.session_id)
            self.fail_turn(f"LM Studio error: {type(exc).__name__}")

    def _apply_chunk(self, turn: AssistantTurn, chunk: Any) -> bool:
        """Fold one decoded SSE chunk into *turn*; True once the turn is complete.

        Raises ValueError for anything that is not a chat-completion chunk.
        """
        if not isinstance(chunk, dict):
            raise ValueError("malformed stream chunk")
        choices = chunk.get("choices") or [{}]
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ValueError("malformed choices")
        choice = choices[0]
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("malformed delta")
        content = delta.get("content")
        if content:
            text = str(content)
            turn.append_text(text)
            self.emit(text_delta(text))
        if choice.get("finish_reason"):
            usage = chunk.get("usage")
            self._complete(turn, usage if isinstance(usage, dict) else None)
            return True
        return False

    def _complete(self, turn: AssistantTurn, usage: dict[str, Any] | None) -> None:
        self.phase = TurnPhase.RESULT
        if turn.text:
            self.conversation.append({"role": "assistant", "content": turn.text})
        self.commit_assistant(turn)

        stats = self.session.stats
        stats.context_window = self.context_window
        common_usage = None
        if usage:
            common_usage = {
                "input_tokens": int(usage.get("prompt_tokens") or 0),
                "output_tokens": int(usage.get("completion_tokens") or 0),
            }
            stats.add_usage(common_usage)
        self.emit(ResultEvent(usage=common_usage))
        self.save_state()
        self.session.emit_stats()
        self.complete_turn()

    async def kill(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self.turn_open:
            self.finish_turn({"type": "error", "message": "Request cancelled"})
        if self._http is not None:
            await self._http.close()
            self._http = None
        self.conversation = []
        self.phase = TurnPhase.IDLE

    def snapshot(self) -> dict[str, Any] | None:
        if not self.conversation:
            return None
        return {"conversation": list(self.conversation)}

    def restore(self, blob: dict[str, Any] | None) -> None:
        if not blob:
            return
        conversation = blob.get("conversation")
        if isinstance(conversation, list):
            self.conversation = [
                {"role": str(m.get("role")), "content": str(m.get("content", ""))}
                for m in conversation if isinstance(m, dict)
            ]

    @classmethod
    def list_models(cls, config: LMStudioConfig | None = None) -> list[ModelInfo]:
        if config is None:
            return []
        return [ModelInfo(m.id, m.label, "LM Studio") for m in config.models]
