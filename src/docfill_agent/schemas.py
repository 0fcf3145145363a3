"""Declared shapes of the documents the pipeline fills.

Attribute names are English; aliases are the placeholder names used inside
the Word templates, which is what the model is asked to return and what the
document renderer consumes.
"""

from __future__ import annotations

from typing import Any, Dict, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DocumentShape(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WeeklyPlanAI(DocumentShape):
    children_council: str = Field(alias="儿童议会")
    public_area: str = Field(alias="公共区域")
    reflection_adjustment: str = Field(alias="反思与调整")
    learning_area: str = Field(alias="学习区")
    home_school: str = Field(alias="家园共育")
    weekly_theme: str = Field(alias="本周主题")
    weekly_goals: str = Field(alias="本周目标")
    environment: str = Field(alias="环境创设")
    class_area: str = Field(alias="班级区域")
    self_check_in: str = Field(alias="自主签到")
    resources: str = Field(alias="资源利用")
    transitions: str = Field(alias="过渡环节")
    sports_area: str = Field(alias="运动区")
    group_activities: str = Field(alias="集体活动")
    meals: str = Field(alias="餐点进餐")
    weekly_review: str = Field(default="", alias="周回顾")
    observation_reflection: str = Field(default="", alias="观察与反思")

    @field_validator("weekly_review", "observation_reflection", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        # optional narrative fields: anything but text is dropped
        return value if isinstance(value, str) else ""

    @field_validator("learning_area", "sports_area")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("activity list must not be empty")
        return value


class DailyPlanActivity(DocumentShape):
    date: str = Field(alias="日期")
    activity_name: str = Field(alias="活动名称")
    breakfast: str = Field(alias="早餐")
    morning_activity: str = Field(alias="晨间活动")
    group_activity: str = Field(alias="集体活动")
    lunch: str = Field(alias="午餐")
    nap: str = Field(alias="午休")
    afternoon_snack: str = Field(alias="午点")
    departure_activity: str = Field(alias="离园活动")


DOCUMENT_SHAPES: Dict[str, Type[DocumentShape]] = {
    "weekly-plan": WeeklyPlanAI,
    "daily-plan": DailyPlanActivity,
}
