"""Generation pipeline: prompt -> provider -> repair -> validated fill data."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel

from .config import multi_line_fields_for
from .limiter import AdmissionLimiter
from .llm.providers.base import LLMProvider
from .llm.registry import create_provider
from .llm.types import GenerationConfig, Message, ProviderError
from .prompts import RenderedPrompt, TemplateStore
from .repair import (
    RepairExhausted,
    apply_to_every_string_field,
    clean_multi_line_fields,
    repair_and_parse,
)
from .schemas import DOCUMENT_SHAPES
from .validators import ShapeValidationError, to_fill_payload, validate_shape

logger = logging.getLogger(__name__)

AGE_GROUP_MAP: Dict[str, str] = {
    "small": "3~4岁",
    "medium": "4~5岁",
    "large": "5~6岁",
}
MAX_DAILY_PLANS = 5

_ENTRY_NUMBER_RE = re.compile(r"^\d{1,2}[.、]\s*")


def age_group_text(age_group: str | None) -> str:
    """Class size codes become the age range used in prompts; other values pass through."""
    return AGE_GROUP_MAP.get(age_group or "", age_group or "")


def calculate_date(start_date: str, offset: int) -> str:
    """``2025-05-30`` plus 2 days -> ``6.1`` (month.day, no padding)."""
    day = date.fromisoformat(start_date) + timedelta(days=offset)
    return f"{day.month}.{day.day}"


def split_activities(text: str | None) -> List[str]:
    """One activity per non-empty line of a cleaned ``集体活动`` field, numbering removed."""
    lines = (line.strip() for line in (text or "").split("\n"))
    return [_ENTRY_NUMBER_RE.sub("", line) for line in lines if line]


@dataclass
class WeeklyPlanRequest:
    month_theme: str
    monthly_plan: str = ""
    class_info: str = ""
    week_number: str = ""
    teacher: str = ""
    date_range: str = ""
    age_group: str = "medium"
    last_week_plan: str | None = None
    selected_names: Sequence[str] = ()
    knowledge_base_info: str = ""


@dataclass
class DailyPlanRequest:
    activities: Sequence[str]
    start_date: str
    class_info: str = ""
    teacher: str = ""
    age_group: str = "medium"
    week_number: str = ""
    knowledge_base_info: str = ""


class GenerationPipeline:
    """
    Turns a template name plus variables into validated structured data.

    Every public call holds one limiter slot for its whole duration, including
    retries of the repair step. Provider errors are not retried here; the
    resilient backend already does that for transport failures.
    """

    def __init__(
        self,
        templates: TemplateStore,
        provider: LLMProvider,
        limiter: AdmissionLimiter | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        repair_attempts: int = 1,
        multi_line_fields: Mapping[str, Sequence[str]] | None = None,
        shapes: Mapping[str, Type[BaseModel]] | None = None,
    ) -> None:
        if repair_attempts < 1:
            raise ValueError("repair_attempts must be at least 1")
        self.templates = templates
        self.provider = provider
        self.limiter = limiter or AdmissionLimiter()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.repair_attempts = repair_attempts
        self.multi_line_fields = {k: list(v) for k, v in (multi_line_fields or {}).items()}
        self.shapes = dict(DOCUMENT_SHAPES if shapes is None else shapes)

    def _generation_config(self) -> GenerationConfig:
        return GenerationConfig(temperature=self.temperature, max_tokens=self.max_tokens)

    async def _collect_stream(self, messages: List[Message]) -> str:
        parts = []
        async for fragment in self.provider.stream(messages, self._generation_config()):
            parts.append(fragment)
        return "".join(parts)

    def _finalize(
        self,
        raw_text: str,
        prompt: RenderedPrompt,
        shape: Optional[Type[BaseModel]],
        multi_line_fields: Sequence[str],
    ) -> Dict[str, Any]:
        data = apply_to_every_string_field(repair_and_parse(raw_text))
        if isinstance(data, dict):
            data = clean_multi_line_fields(data, multi_line_fields)
        return validate_shape(data, shape=shape, fields=prompt.fields)

    async def _generate_validated(
        self,
        template_name: str,
        variables: Mapping[str, Any] | None,
        shape: Optional[Type[BaseModel]],
        multi_line_fields: Optional[Sequence[str]],
        streamed: bool,
    ) -> Dict[str, Any]:
        prompt = self.templates.get(template_name, variables)
        messages = prompt.to_messages()
        shape = shape or self.shapes.get(template_name)
        if multi_line_fields is None:
            multi_line_fields = self.multi_line_fields.get(template_name, [])

        logger.info(
            f"Generating '{template_name}' with {self.provider.name}:{self.provider.model}"
            f" (streamed={streamed})"
        )
        start = time.perf_counter()
        last_error: Exception | None = None
        for attempt in range(1, self.repair_attempts + 1):
            if streamed:
                raw_text = await self._collect_stream(messages)
            else:
                raw_text = await self.provider.invoke(messages, self._generation_config())
            try:
                result = self._finalize(raw_text, prompt, shape, multi_line_fields)
            except (RepairExhausted, ShapeValidationError) as exc:
                last_error = exc
                logger.warning(
                    f"Output for '{template_name}' rejected (attempt {attempt}/{self.repair_attempts}): "
                    f"{str(exc).splitlines()[0]}"
                )
                continue
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"Generated '{template_name}' in {latency_ms}ms")
            return result

        raise last_error

    async def generate(
        self,
        template_name: str,
        variables: Mapping[str, Any] | None = None,
        shape: Optional[Type[BaseModel]] = None,
        multi_line_fields: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        return await self.limiter.run(
            lambda: self._generate_validated(
                template_name, variables, shape, multi_line_fields, streamed=False
            )
        )

    async def generate_streamed(
        self,
        template_name: str,
        variables: Mapping[str, Any] | None = None,
        shape: Optional[Type[BaseModel]] = None,
        multi_line_fields: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        return await self.limiter.run(
            lambda: self._generate_validated(
                template_name, variables, shape, multi_line_fields, streamed=True
            )
        )

    async def generate_text(self, template_name: str, variables: Mapping[str, Any] | None = None) -> str:
        prompt = self.templates.get(template_name, variables)
        return await self.limiter.run(
            lambda: self.provider.invoke(prompt.to_messages(), self._generation_config())
        )

    async def stream(
        self, template_name: str, variables: Mapping[str, Any] | None = None
    ) -> AsyncIterator[str]:
        prompt = self.templates.get(template_name, variables)
        async with self.limiter.slot():
            async for fragment in self.provider.stream(prompt.to_messages(), self._generation_config()):
                yield fragment

    async def generate_fill_payload(
        self,
        template_name: str,
        variables: Mapping[str, Any] | None = None,
        shape: Optional[Type[BaseModel]] = None,
        streamed: bool = False,
    ) -> Dict[str, str]:
        if streamed:
            data = await self.generate_streamed(template_name, variables, shape=shape)
        else:
            data = await self.generate(template_name, variables, shape=shape)
        return to_fill_payload(data, self.templates.load(template_name).fields)

    async def _narrative(self, template_name: str, variables: Mapping[str, Any]) -> str:
        # narrative sections are optional in the document; a provider failure leaves them empty
        try:
            return await self.generate_text(template_name, variables)
        except ProviderError as exc:
            logger.warning(f"Skipping '{template_name}' section: {exc}")
            return ""

    async def generate_weekly_plan(self, request: WeeklyPlanRequest, streamed: bool = False) -> Dict[str, str]:
        """
        Builds the complete weekly-plan fill payload.

        The last-week review (only when a previous plan is given) and the
        observation/reflection section come from their own templates and
        replace whatever the weekly-plan output put in those fields. The
        manual fields (class, week, teacher, dates, month theme) come from
        the request.
        """
        age_text = age_group_text(request.age_group)
        names = "、".join(request.selected_names)

        review = ""
        if request.last_week_plan:
            review = await self._narrative(
                "review",
                {"lastWeekPlan": request.last_week_plan, "ageGroup": age_text, "selectedNames": names},
            )
        reflection = await self._narrative(
            "reflection",
            {
                "monthTheme": request.month_theme,
                "monthlyPlan": request.monthly_plan,
                "ageGroup": age_text,
                "selectedNames": names,
            },
        )

        variables = {
            "monthTheme": request.month_theme,
            "monthlyPlan": request.monthly_plan,
            "ageGroup": age_text,
            "knowledgeBaseInfo": request.knowledge_base_info,
            "selectedNames": names,
            "hasLastWeekPlan": bool(request.last_week_plan),
        }
        if streamed:
            data = await self.generate_streamed("weekly-plan", variables)
        else:
            data = await self.generate("weekly-plan", variables)

        fill: Dict[str, Any] = {
            "班级": request.class_info,
            "第几周": request.week_number,
            "教师": request.teacher,
            "日期": request.date_range,
            "本月主题": request.month_theme,
            "上周回顾": "",
            "周回顾": "",
            "观察与反思": "",
            **data,
        }
        if review:
            fill["上周回顾"] = review
            fill["周回顾"] = review
        if reflection:
            fill["观察与反思"] = reflection
        return to_fill_payload(fill, self.templates.load("weekly-plan").fields)

    async def generate_daily_plans(self, request: DailyPlanRequest) -> List[Dict[str, str]]:
        """
        One daily-plan payload per activity, at most ``MAX_DAILY_PLANS``.

        Day ``i`` is dated ``start_date + i``. A day whose generation fails is
        logged and left out; the remaining days are still generated.
        """
        activities = list(request.activities)[:MAX_DAILY_PLANS]
        dates = [calculate_date(request.start_date, offset) for offset in range(len(activities))]
        fields = self.templates.load("daily-plan").fields
        age_text = age_group_text(request.age_group)

        plans: List[Dict[str, str]] = []
        for activity, day in zip(activities, dates):
            variables = {
                "activityName": activity,
                "classInfo": request.class_info,
                "teacher": request.teacher,
                "date": day,
                "ageGroup": age_text,
                "weekNumber": request.week_number,
                "knowledgeBaseInfo": request.knowledge_base_info,
            }
            try:
                data = await self.generate("daily-plan", variables)
            except (ProviderError, RepairExhausted, ShapeValidationError) as exc:
                logger.warning(f"Daily plan for {day} ('{activity}') failed: {exc}")
                continue
            plans.append(
                to_fill_payload({"班级": request.class_info, "教师": request.teacher, **data}, fields)
            )

        logger.info(f"Generated {len(plans)}/{len(activities)} daily plans")
        return plans

    async def aclose(self) -> None:
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()


def build_pipeline(config: Dict[str, Any], provider: LLMProvider | None = None) -> GenerationPipeline:
    """Composition root: one template store, provider and limiter per pipeline."""
    llm_cfg = config.get("llm", {})
    max_tokens = llm_cfg.get("max_tokens")
    return GenerationPipeline(
        templates=TemplateStore(config.get("paths", {}).get("prompts_dir", "prompts")),
        provider=provider or create_provider(config),
        limiter=AdmissionLimiter(int(config.get("limiter", {}).get("max_concurrent", 5))),
        temperature=float(llm_cfg.get("temperature", 0.7)),
        max_tokens=int(max_tokens) if max_tokens else None,
        repair_attempts=int(llm_cfg.get("repair_attempts", 1)),
        multi_line_fields={
            name: multi_line_fields_for(config, name) for name in config.get("documents", {}) or {}
        },
    )
