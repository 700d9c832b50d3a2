"""
Pydantic schemas for the storybank API.

Field names are camelCase because they are the JSON wire names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, StrictInt


class QuestionPayload(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None


class CreateLevelRequest(BaseModel):
    # Presence is checked by the repository so a missing field reports 400
    # with the field named, instead of a schema error.
    levelName: Optional[str] = None
    monthNumber: Optional[StrictInt] = None
    storyNumber: Optional[StrictInt] = None
    storyName: Optional[str] = None
    questions: Optional[list[QuestionPayload]] = None


class LevelResponse(BaseModel):
    id: str
    levelName: str
    months: list[str]
    createdAt: datetime
    updatedAt: datetime


class CreateLevelResponse(BaseModel):
    message: str
    level: LevelResponse


class MonthResponse(BaseModel):
    id: str
    monthNumber: int
    level: str
    stories: list[str]
    createdAt: datetime
    updatedAt: datetime


class StoryResponse(BaseModel):
    id: str
    storyNumber: int
    storyName: str
    month: str
    questions: list[str]
    createdAt: datetime
    updatedAt: datetime


class QuestionResponse(BaseModel):
    id: str
    question: str
    answer: str


class RecentStoryResponse(BaseModel):
    levelName: str
    monthNumber: Optional[int] = None
    storyNumber: int
    storyName: str
    storyCreatedAt: datetime


class DeleteStoryResponse(BaseModel):
    message: str
    levelDeleted: bool


class HealthResponse(BaseModel):
    status: Literal["ok"]
