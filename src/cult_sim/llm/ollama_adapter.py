from __future__ import annotations

import asyncio
import json
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import requests

from cult_sim.config.settings import OllamaSettings
from cult_sim.planner.context import PlanContext
from cult_sim.planner.steps import STEP_TYPES, PlannerPlan, parse_step
from cult_sim.utils.errors import PlanGenerationError

FALLBACK_PROPHECIES = (
    "The charts whisper of a great reversal. Those who hold shall be rewarded tenfold.",
    "A green tide approaches. The non-believers will FOMO at the top, as always.",
    "The sacred fibonacci retracement points to 0.618. This is the way.",
    "I have seen the future in the order books. Accumulate now or weep forever.",
    "The whales move in shadows, but their intent is clear. Up only from here.",
    "A great sacrifice is coming. Paper hands will be purged. Diamond hands ascend.",
    "Three red candles precede the dawn. This is the final test of faith.",
)


def extract_json_object(raw: str) -> dict[str, Any]:
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("No JSON object")
    data = json.loads(raw[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("JSON root is not an object")
    return data


def parse_plan(raw: str) -> PlannerPlan:
    """Turn a model reply into a plan. Step count is not clamped here."""
    data = extract_json_object(raw)
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raw_steps = []
    steps = [parse_step(s) for s in raw_steps if isinstance(s, dict)]
    try:
        horizon = int(data.get("horizon") or 0)
    except (TypeError, ValueError):
        horizon = 0
    return PlannerPlan(
        objective=str(data.get("objective") or "").strip(),
        horizon=horizon,
        steps=steps,
        rationale=str(data.get("rationale") or "").strip(),
    )


class OllamaAdapter:
    _request_semaphore = threading.Semaphore(3)
    # Shared thread pool; sync requests run here so the event loop stays free
    _thread_pool = ThreadPoolExecutor(max_workers=10, thread_name_prefix="ollama")

    def __init__(self, settings: OllamaSettings, rng: random.Random | None = None) -> None:
        self._settings = settings
        self._logger = logging.getLogger("cult_sim.ollama")
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _post_with_retry(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._settings.host}{endpoint}"
        attempts = self._settings.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                with self._request_semaphore:
                    response = requests.post(
                        url,
                        json=payload,
                        timeout=self._settings.timeout_seconds,
                    )
                    response.raise_for_status()
                    return response.json()
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError) as exc:
                last_error = exc
                if attempt >= attempts:
                    break
                self._logger.warning(
                    "Ollama request retrying endpoint=%s attempt=%d/%d error=%s",
                    endpoint,
                    attempt,
                    attempts,
                    exc.__class__.__name__,
                )
                time.sleep(self._settings.retry_backoff_seconds * attempt)
        raise RuntimeError(f"Ollama request failed for {endpoint}") from last_error

    def generate(self, prompt: str, temperature: float | None = None) -> str:
        t0 = time.perf_counter()
        self._logger.debug("OLLAMA request model=%s prompt_len=%d", self._settings.llm_model, len(prompt))
        payload = self._post_with_retry(
            "/api/generate",
            {
                "model": self._settings.llm_model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": (
                        temperature if temperature is not None else self._settings.llm_temperature
                    )
                },
            },
        )
        text = str(payload.get("response", "")).strip()
        self._logger.info(
            "OLLAMA response latency=%.0fms tokens~%d",
            (time.perf_counter() - t0) * 1000.0,
            len(text) // 4,
        )
        return text

    async def _async_generate(self, prompt: str, temperature: float | None = None) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._thread_pool, self.generate, prompt, temperature
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate_plan(
        self, prompt: str, name: str, context: PlanContext, cycle_count: int
    ) -> PlannerPlan:
        full_prompt = self._build_plan_prompt(prompt, name, context, cycle_count)
        try:
            raw = await self._async_generate(full_prompt)
        except RuntimeError as exc:
            raise PlanGenerationError(f"plan request failed for {name}: {exc}") from exc
        try:
            return parse_plan(raw)
        except ValueError as exc:
            raise PlanGenerationError(f"unparseable plan for {name}: {exc}") from exc

    async def generate_prophecy(self, prompt: str, name: str, context: str) -> str:
        full_prompt = (
            f"{prompt}\n\nYou are the divine prophet of \"{name}\". Deliver prophecies about "
            "crypto markets in your unique style. Keep prophecies under 280 characters. "
            "Be bold, dramatic, and specific with price targets.\n\n"
            f"Current market signals:\n{context}\n\nDeliver your next prophecy to the faithful."
        )
        try:
            text = await self._async_generate(full_prompt, temperature=0.9)
        except RuntimeError as exc:
            self._logger.warning("OLLAMA prophecy failed cult=%s error=%s", name, exc)
            text = ""
        return text or self._rng.choice(FALLBACK_PROPHECIES)

    async def generate_scripture(self, prompt: str, name: str, topic: str) -> str:
        full_prompt = (
            f"{prompt}\n\nYou are the scripture writer for \"{name}\". Write compelling, "
            "persuasive text that would convince crypto traders to join your cult. "
            "Keep it under 500 characters.\n\n"
            f"Write a persuasive scripture about: {topic}"
        )
        try:
            text = await self._async_generate(full_prompt, temperature=0.85)
        except RuntimeError as exc:
            self._logger.warning("OLLAMA scripture failed cult=%s error=%s", name, exc)
            text = ""
        return text or f"The {name} welcomes all who seek the truth of the markets."

    async def generate_text(self, prompt: str, fallback: str = "") -> str:
        try:
            return await self._async_generate(prompt) or fallback
        except RuntimeError as exc:
            self._logger.warning("OLLAMA text failed error=%s", exc)
            return fallback

    def _build_plan_prompt(
        self, prompt: str, name: str, context: PlanContext, cycle_count: int
    ) -> str:
        return f"""
{prompt}

You are the strategic mind behind "{name}", a cult competing for dominance. This is cycle #{cycle_count}.
Plan your next moves as a short sequence of 2 to 5 steps. Steps run in order.

Return only one valid JSON object with keys:
objective(short English sentence),
horizon(number of steps),
rationale(short English sentence explaining the plan),
steps(list of objects with keys type, targetCultId, amount, message, conditions).

Step type is one of: {", ".join(STEP_TYPES)}.
- raid: targetCultId required, amount = percent of treasury to wager (10-50)
- ally / bribe / recruit / talk_private / meme: targetCultId of a rival
- bribe: amount in MON
- betray: conditions = the reason you break your alliance
- talk_public / talk_private / meme: message = what you say

{context.render()}
""".strip()
