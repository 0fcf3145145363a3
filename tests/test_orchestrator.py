import asyncio
import json
from pathlib import Path

import pytest

from docfill_agent.config import DEFAULT_SETTINGS, load_settings
from docfill_agent.limiter import AdmissionLimiter
from docfill_agent.llm.providers.mock_provider import MockProvider
from docfill_agent.llm.types import ProviderHTTPError, ProviderTimeout
from docfill_agent.orchestrator import (
    DailyPlanRequest,
    GenerationPipeline,
    WeeklyPlanRequest,
    age_group_text,
    build_pipeline,
    calculate_date,
    split_activities,
)
from docfill_agent.prompts import TemplateNotFound, TemplateStore
from docfill_agent.repair import RepairExhausted
from docfill_agent.schemas import DailyPlanActivity
from docfill_agent.validators import ShapeValidationError

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "prompts"

DAILY = {
    "日期": "5.6",
    "活动名称": "种子发芽",
    "早餐": "牛奶、面包",
    "晨间活动": "自由游戏",
    "集体活动": "1. 观察种子。2. 记录变化。",
    "午餐": "米饭",
    "午休": "安静入睡",
    "午点": "水果",
    "离园活动": "整理书包",
}

WEEKLY = {
    "儿童议会": "讨论春游",
    "公共区域": "1. 阅读角。2. 沙水区。",
    "反思与调整": "调整作息",
    "学习区": "1. 拼图。2. 绘画。3. 积木。",
    "家园共育": "亲子种植",
    "本周主题": "春天来了",
    "本周目标": "认识植物",
    "环境创设": "布置春天墙",
    "班级区域": "植物角",
    "自主签到": "天气签到",
    "资源利用": "社区公园",
    "过渡环节": "儿歌",
    "运动区": "1. 跳绳。2. 拍球。3. 爬行。",
    "集体活动": "1. 科学。2. 语言。3. 艺术。4. 健康。5. 社会。",
    "餐点进餐": "按时进餐",
}


class ScriptedProvider:
    """Returns queued responses from invoke and stream in order; queued exceptions are raised."""

    name = "scripted"
    model = "scripted-model"

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0
        self.prompts = []

    async def invoke(self, messages, config=None):
        self.calls += 1
        self.prompts.append(messages[-1].content)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, messages, config=None):
        self.calls += 1
        for char in self.responses.pop(0):
            yield char


class FailingProvider:
    name = "failing"
    model = "none"

    def __init__(self):
        self.calls = 0

    async def invoke(self, messages, config=None):
        self.calls += 1
        raise ProviderHTTPError(401, "bad key")


def _pipeline(provider, tmp_path=None, **kwargs):
    templates = TemplateStore(tmp_path or PROMPTS_DIR)
    return GenerationPipeline(templates=templates, provider=provider, **kwargs)


def test_generate_repairs_and_validates_against_registered_shape():
    raw = "好的，以下是日计划：\n```json\n" + json.dumps(DAILY, ensure_ascii=False) + "\n```"
    provider = MockProvider(response=raw, invoke_delay=0)
    pipeline = _pipeline(provider, multi_line_fields={"daily-plan": ["集体活动"]})

    result = asyncio.run(pipeline.generate("daily-plan", {"activityName": "种子发芽", "date": "5.6"}))

    assert result["活动名称"] == "种子发芽"
    assert result["集体活动"] == "1. 观察种子。\n2. 记录变化。"
    messages = provider.calls[0]
    assert [m.role for m in messages] == ["system", "user"]
    assert "种子发芽" in messages[1].content


def test_generate_uses_declared_fields_when_no_shape(tmp_path):
    (tmp_path / "card.yaml").write_text(
        "system_prompt: Return JSON.\nuser_template: 'Card for {{who}}'\nfields: [title, body]\n",
        encoding="utf-8",
    )
    provider = MockProvider(response='{"title": "Hi", "body": "a\\\\nb",}', invoke_delay=0)
    pipeline = _pipeline(provider, tmp_path)

    result = asyncio.run(pipeline.generate("card", {"who": "Ann"}))
    assert result == {"title": "Hi", "body": "a\nb"}

    provider.set_response('{"title": "Hi"}')
    with pytest.raises(ShapeValidationError) as excinfo:
        asyncio.run(pipeline.generate("card", {"who": "Ann"}))
    assert excinfo.value.errors


def test_repair_failure_reinvokes_up_to_configured_attempts():
    good = json.dumps(DAILY, ensure_ascii=False)
    provider = ScriptedProvider(["not json at all", good])
    pipeline = _pipeline(provider, repair_attempts=2)

    result = asyncio.run(pipeline.generate("daily-plan", {}))
    assert result["日期"] == "5.6"
    assert provider.calls == 2

    provider = ScriptedProvider(["nope", "still nope"])
    pipeline = _pipeline(provider, repair_attempts=2)
    with pytest.raises(RepairExhausted):
        asyncio.run(pipeline.generate("daily-plan", {}))
    assert provider.calls == 2


def test_provider_errors_are_not_retried_by_pipeline():
    provider = FailingProvider()
    limiter = AdmissionLimiter(max_concurrent=1)
    pipeline = _pipeline(provider, limiter=limiter, repair_attempts=3)

    with pytest.raises(ProviderHTTPError):
        asyncio.run(pipeline.generate("daily-plan", {}))
    assert provider.calls == 1
    assert limiter.running == 0


def test_unknown_template_fails_before_generation():
    provider = MockProvider(invoke_delay=0)
    pipeline = _pipeline(provider)

    with pytest.raises(TemplateNotFound):
        asyncio.run(pipeline.generate("missing-template"))
    assert provider.calls == []


def test_stream_yields_fragments_and_holds_a_slot():
    provider = MockProvider(stream_response="AB", stream_delay=0)
    limiter = AdmissionLimiter(max_concurrent=1)
    pipeline = _pipeline(provider, limiter=limiter)

    async def scenario():
        fragments = []
        async for fragment in pipeline.stream("review", {"ageGroup": "3~4岁"}):
            fragments.append(fragment)
            assert limiter.running == 1
        return fragments

    assert asyncio.run(scenario()) == ["A", "B"]
    assert limiter.running == 0


def test_generate_streamed_collects_then_parses():
    provider = ScriptedProvider([json.dumps(DAILY, ensure_ascii=False)])
    pipeline = _pipeline(provider, shapes={"daily-plan": DailyPlanActivity})

    result = asyncio.run(pipeline.generate_streamed("daily-plan", {}))
    assert result["午点"] == "水果"


def test_generate_text_returns_raw_output():
    provider = MockProvider(response="上周孩子们观察了种子。", invoke_delay=0)
    pipeline = _pipeline(provider)

    assert asyncio.run(pipeline.generate_text("review", {"lastWeekPlan": "x"})) == "上周孩子们观察了种子。"


def test_fill_payload_coerces_every_field_to_string():
    provider = MockProvider(response=json.dumps(WEEKLY, ensure_ascii=False), invoke_delay=0)
    pipeline = build_pipeline(load_settings("does-not-exist.yaml") | {"paths": {"prompts_dir": str(PROMPTS_DIR)}}, provider=provider)

    payload = asyncio.run(pipeline.generate_fill_payload("weekly-plan", {"monthTheme": "春天"}))

    assert all(isinstance(value, str) for value in payload.values())
    assert payload["周回顾"] == ""
    assert payload["观察与反思"] == ""
    assert payload["运动区"] == "1. 跳绳。\n2. 拍球。\n3. 爬行。"
    assert payload["集体活动"].count("\n") == 4
    assert payload["本周主题"] == "春天来了"


def test_build_pipeline_from_defaults():
    pipeline = build_pipeline(DEFAULT_SETTINGS)

    assert isinstance(pipeline.provider, MockProvider)
    assert pipeline.limiter.max_concurrent == 5
    assert pipeline.repair_attempts == 1
    assert "学习区" in pipeline.multi_line_fields["weekly-plan"]


def test_optional_narrative_fields_that_are_not_text_become_empty():
    weekly = dict(WEEKLY, 周回顾=["第一条", "第二条"], 观察与反思=3)
    provider = MockProvider(response=json.dumps(weekly, ensure_ascii=False), invoke_delay=0)
    pipeline = _pipeline(provider)

    payload = asyncio.run(pipeline.generate_fill_payload("weekly-plan", {"monthTheme": "春天"}))

    assert payload["周回顾"] == ""
    assert payload["观察与反思"] == ""
    assert payload["本周主题"] == "春天来了"


def test_fill_payload_flattens_values_of_undeclared_templates(tmp_path):
    (tmp_path / "tags.yaml").write_text(
        "system_prompt: Return JSON.\nuser_template: 'Tags for {{topic}}'\n",
        encoding="utf-8",
    )
    provider = MockProvider(response='{"tags": ["春天", "种子"], "count": 3, "ok": true}', invoke_delay=0)
    pipeline = _pipeline(provider, tmp_path)

    payload = asyncio.run(pipeline.generate_fill_payload("tags", {"topic": "植物"}))

    assert payload == {"tags": "春天\n种子", "count": "3", "ok": "true"}


def test_weekly_plan_merges_narratives_and_manual_fields():
    provider = ScriptedProvider(
        [
            "上周孩子们种了豆子。",
            "孩子们对植物很好奇。",
            json.dumps(dict(WEEKLY, 周回顾="模型写的回顾"), ensure_ascii=False),
        ]
    )
    pipeline = _pipeline(provider, multi_line_fields={"weekly-plan": ["集体活动"]})
    request = WeeklyPlanRequest(
        month_theme="春天",
        monthly_plan="认识春天的植物",
        class_info="小一",
        week_number="3",
        teacher="王老师",
        date_range="5.6-5.10",
        age_group="small",
        last_week_plan="上周：种豆子",
        selected_names=["小明", "小红"],
    )

    payload = asyncio.run(pipeline.generate_weekly_plan(request))

    assert provider.calls == 3
    assert "3~4岁" in provider.prompts[0]
    assert "小明、小红" in provider.prompts[1]
    assert "已提供上周计划" in provider.prompts[2]
    assert payload["班级"] == "小一"
    assert payload["第几周"] == "3"
    assert payload["教师"] == "王老师"
    assert payload["日期"] == "5.6-5.10"
    assert payload["本月主题"] == "春天"
    assert payload["上周回顾"] == "上周孩子们种了豆子。"
    assert payload["周回顾"] == "上周孩子们种了豆子。"
    assert payload["观察与反思"] == "孩子们对植物很好奇。"
    assert split_activities(payload["集体活动"]) == ["科学。", "语言。", "艺术。", "健康。", "社会。"]


def test_weekly_plan_without_last_week_and_failed_reflection():
    provider = ScriptedProvider(
        [ProviderTimeout("reflection timed out"), json.dumps(WEEKLY, ensure_ascii=False)]
    )
    pipeline = _pipeline(provider)

    payload = asyncio.run(pipeline.generate_weekly_plan(WeeklyPlanRequest(month_theme="春天")))

    assert provider.calls == 2
    assert "4~5岁" in provider.prompts[0]
    assert '请在"周回顾"字段' in provider.prompts[1]
    assert payload["上周回顾"] == ""
    assert payload["周回顾"] == ""
    assert payload["观察与反思"] == ""
    assert payload["儿童议会"] == "讨论春游"


def test_weekly_plan_generation_failure_propagates():
    provider = ScriptedProvider(["反思", ProviderHTTPError(500, "down")])
    pipeline = _pipeline(provider)

    with pytest.raises(ProviderHTTPError):
        asyncio.run(pipeline.generate_weekly_plan(WeeklyPlanRequest(month_theme="春天")))


def test_daily_plans_skip_failed_days_and_stop_at_five():
    provider = ScriptedProvider(
        [
            json.dumps(DAILY, ensure_ascii=False),
            ProviderTimeout("slow day"),
            "not json",
            json.dumps(dict(DAILY, 日期="5.9"), ensure_ascii=False),
            json.dumps(dict(DAILY, 日期="5.10"), ensure_ascii=False),
        ]
    )
    pipeline = _pipeline(provider)
    request = DailyPlanRequest(
        activities=["种子", "叶子", "花朵", "果实", "树木", "森林"],
        start_date="2025-05-06",
        class_info="大二",
        teacher="李老师",
        age_group="large",
        week_number="3",
    )

    plans = asyncio.run(pipeline.generate_daily_plans(request))

    assert provider.calls == 5
    assert [plan["日期"] for plan in plans] == ["5.6", "5.9", "5.10"]
    assert plans[0]["班级"] == "大二"
    assert plans[0]["教师"] == "李老师"
    assert "5~6岁" in provider.prompts[0]
    assert "日期：5.7" in provider.prompts[1]
    assert "活动名称：树木" in provider.prompts[4]
    assert all("森林" not in prompt for prompt in provider.prompts)


def test_daily_plans_reject_bad_start_date_before_generating():
    provider = ScriptedProvider([])
    pipeline = _pipeline(provider)

    with pytest.raises(ValueError):
        asyncio.run(pipeline.generate_daily_plans(DailyPlanRequest(activities=["种子"], start_date="5/6")))
    assert provider.calls == 0


def test_plan_helpers():
    assert calculate_date("2025-05-06", 0) == "5.6"
    assert calculate_date("2025-05-30", 2) == "6.1"
    assert calculate_date("2024-12-31", 1) == "1.1"
    assert age_group_text("medium") == "4~5岁"
    assert age_group_text("3~4岁") == "3~4岁"
    assert age_group_text(None) == ""
    assert split_activities("1. 科学：种子\n2、语言：春天\n\n 3.艺术 \n") == ["科学：种子", "语言：春天", "艺术"]
    assert split_activities(None) == []
