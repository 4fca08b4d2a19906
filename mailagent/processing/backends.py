"""AI backends — a local CLI subprocess and the hosted Anthropic API — and the selector over them."""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import anthropic
from rich.console import Console

from mailagent.processing.prompts import build_filter_prompt, build_filter_system_prompt

if TYPE_CHECKING:
    from mailagent.config import Settings
    from mailagent.storage.models import CachedMessage

logger = logging.getLogger(__name__)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


class AIBackendError(Exception):
    """Raised when a backend (or every backend) fails to answer."""


@dataclass(frozen=True)
class AIOptions:
    max_tokens: int = 1024
    temperature: float = 0.3


# ── Backends ───────────────────────────────────────────────────────────────────


@runtime_checkable
class AIBackend(Protocol):
    """Interface shared by every backend the selector can try."""

    name: str

    @property
    def available(self) -> bool: ...

    def ask(self, system_prompt: str, query: str, options: AIOptions) -> str: ...


class SubprocessBackend:
    """Runs a prompt-in, text-out CLI (``claude -p`` by default).

    The prompt is written to stdin; stdout is the answer. The process is
    killed when ``timeout`` expires.
    """

    name = "cli"

    def __init__(
        self,
        command: Sequence[str],
        timeout: float,
        runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self.command = list(command)
        self.timeout = timeout
        self._run = runner

    @property
    def available(self) -> bool:
        return bool(self.command) and shutil.which(self.command[0]) is not None

    def ask(self, system_prompt: str, query: str, options: AIOptions) -> str:
        prompt = f"{system_prompt}\n\nUser Query: {query}\n\nPlease provide a concise, direct response."
        try:
            result = self._run(
                self.command,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise AIBackendError(f"{self.command[0]!r} not found on PATH") from exc
        except OSError as exc:
            raise AIBackendError(f"could not start {self.command[0]!r}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AIBackendError(f"timed out after {self.timeout:g}s") from exc

        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise AIBackendError(detail)
        output = (result.stdout or "").strip()
        if not output:
            raise AIBackendError("empty response")
        return output

    def __repr__(self) -> str:
        return f"SubprocessBackend({' '.join(self.command)!r}, timeout={self.timeout:g})"


class AnthropicBackend:
    """Calls the Anthropic Messages API with the synchronous SDK client."""

    name = "api"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._client = client or anthropic.Anthropic(api_key=api_key, timeout=timeout)

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    def ask(self, system_prompt: str, query: str, options: AIOptions) -> str:
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": query}],
            )
        except anthropic.APIError as exc:
            raise AIBackendError(str(exc)) from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        if not text:
            raise AIBackendError(f"empty response (stop_reason={response.stop_reason!r})")
        return text

    def __repr__(self) -> str:
        return f"AnthropicBackend({self.model!r})"


# ── Selector ───────────────────────────────────────────────────────────────────


class BackendSelector:
    """Ordered, immutable list of backends with first-success semantics.

    Built once at startup. With an API key the CLI backend runs on the short
    timeout and the hosted API catches its failures; without one the CLI is
    the only option and gets the full timeout.

    Usage::

        selector = BackendSelector.from_settings(settings)
        answer = selector.ask(SYSTEM_PROMPT, "what's new?")
    """

    def __init__(
        self,
        backends: Sequence[AIBackend],
        debug: bool = False,
        console: Console | None = None,
    ) -> None:
        self.backends: tuple[AIBackend, ...] = tuple(backends)
        self.debug = debug
        self.last_backend: str | None = None
        self._console = console or Console()

    @classmethod
    def from_settings(cls, settings: Settings, console: Console | None = None) -> BackendSelector:
        if settings.anthropic_api_key:
            backends: list[AIBackend] = [
                SubprocessBackend(settings.ai_command, settings.ai_fallback_timeout),
                AnthropicBackend(
                    settings.anthropic_api_key, settings.ai_model, timeout=settings.ai_timeout
                ),
            ]
        else:
            backends = [SubprocessBackend(settings.ai_command, settings.ai_timeout)]
        return cls(backends, debug=settings.debug_ai, console=console)

    @property
    def available(self) -> bool:
        return any(b.available for b in self.backends)

    def describe(self) -> str:
        return " → ".join(repr(b) for b in self.backends) or "(no AI backends)"

    def ask(self, system_prompt: str, query: str, options: AIOptions | None = None) -> str:
        """Return the first backend's answer.

        Raises:
            AIBackendError: every backend failed; the message lists each reason.
        """
        options = options or AIOptions()
        failures: list[str] = []
        for backend in self.backends:
            try:
                answer = backend.ask(system_prompt, query, options)
            except AIBackendError as exc:
                logger.warning("AI backend %s failed: %s", backend.name, exc)
                failures.append(f"{backend.name.upper()}: {exc}")
                continue
            self.last_backend = backend.name
            return answer
        raise AIBackendError(", ".join(failures) or "no AI backends configured")

    def filter(
        self,
        items: Sequence[CachedMessage],
        query: str,
        item_type: str = "emails",
    ) -> list[CachedMessage]:
        """Ask the model which ``items`` match ``query``.

        Returned objects are mapped back onto ``items`` by ``id``; anything the
        model invents is dropped. An unparseable answer yields ``items`` unchanged.

        Raises:
            AIBackendError: no backend could answer.
        """
        payload = [item.to_prompt_dict() for item in items]
        if self.debug:
            self._debug(f"AI filter input: {len(payload)} {item_type}")
            if payload:
                self._debug(f"Sample item: {json.dumps(payload[0], default=str)}")

        response = self.ask(
            build_filter_system_prompt(item_type),
            build_filter_prompt(payload, query),
            AIOptions(max_tokens=4000, temperature=0.1),
        )

        match = _JSON_ARRAY.search(response)
        if match is None:
            logger.warning("AI filter returned no JSON array; keeping all %d items", len(items))
            return list(items)
        try:
            chosen = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            logger.warning("AI filter returned invalid JSON (%s); keeping all items", exc)
            return list(items)
        if not isinstance(chosen, list):
            return list(items)

        by_id = {item.id: item for item in items}
        result: list[CachedMessage] = []
        seen: set[int] = set()
        for entry in chosen:
            if not isinstance(entry, dict):
                continue
            try:
                key = int(entry.get("id"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                continue
            if key in by_id and key not in seen:
                seen.add(key)
                result.append(by_id[key])

        if self.debug:
            self._debug(f"AI filter output: {len(result)} {item_type}")
        return result

    def _debug(self, message: str) -> None:
        logger.info(message)
        self._console.print(f"[dim]{message}[/dim]")
