"""
HTTP routes for the storybank API.

Handlers stay thin: they call the repository and shape its records into
response models. Domain errors are mapped to status codes in ``app.py``.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from storybank.config import get_settings
from storybank.db import LevelRecord, MonthRecord, QuestionRecord, StoryRecord
from storybank.dependencies import get_repository
from storybank.repository import HierarchyRepository, NewQuestion
from storybank.schemas import (
    CreateLevelRequest,
    CreateLevelResponse,
    DeleteStoryResponse,
    HealthResponse,
    LevelResponse,
    MonthResponse,
    QuestionResponse,
    RecentStoryResponse,
    StoryResponse,
)

router = APIRouter()


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _level_response(level: LevelRecord) -> LevelResponse:
    return LevelResponse(
        id=level.id,
        levelName=level.level_name,
        months=level.months,
        createdAt=_timestamp(level.created_at),
        updatedAt=_timestamp(level.updated_at),
    )


def _month_response(month: MonthRecord) -> MonthResponse:
    return MonthResponse(
        id=month.id,
        monthNumber=month.month_number,
        level=month.level_id,
        stories=month.stories,
        createdAt=_timestamp(month.created_at),
        updatedAt=_timestamp(month.updated_at),
    )


def _story_response(story: StoryRecord) -> StoryResponse:
    return StoryResponse(
        id=story.id,
        storyNumber=story.story_number,
        storyName=story.story_name,
        month=story.month_id,
        questions=story.questions,
        createdAt=_timestamp(story.created_at),
        updatedAt=_timestamp(story.updated_at),
    )


def _question_response(question: QuestionRecord) -> QuestionResponse:
    return QuestionResponse(
        id=question.id, question=question.question, answer=question.answer
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@router.post("/create-level", response_model=CreateLevelResponse, status_code=201)
def create_level(
    payload: CreateLevelRequest,
    repo: HierarchyRepository = Depends(get_repository),
):
    """
    Create a story and its questions, finding or creating the level and
    month it belongs to.
    """
    questions = None
    if payload.questions is not None:
        questions = [
            NewQuestion(question=item.question, answer=item.answer)
            for item in payload.questions
        ]
    level = repo.create_story_with_questions(
        payload.levelName,
        payload.monthNumber,
        payload.storyNumber,
        payload.storyName,
        questions,
    )
    return CreateLevelResponse(
        message="Data created successfully", level=_level_response(level)
    )


@router.get("/getAllLevels", response_model=list[LevelResponse])
def get_all_levels(repo: HierarchyRepository = Depends(get_repository)):
    return [_level_response(level) for level in repo.list_levels()]


@router.get("/level/{level_name}/months", response_model=list[MonthResponse])
def get_months(
    level_name: str, repo: HierarchyRepository = Depends(get_repository)
):
    return [_month_response(m) for m in repo.list_months_for_level(level_name)]


@router.get(
    "/level/{level_name}/month/{month_number}/stories",
    response_model=list[StoryResponse],
)
def get_stories(
    level_name: str,
    month_number: int,
    repo: HierarchyRepository = Depends(get_repository),
):
    stories = repo.list_stories_for_month(level_name, month_number)
    return [_story_response(story) for story in stories]


@router.get(
    "/level/{level_name}/month/{month_number}/story/{story_number}/questions",
    response_model=list[QuestionResponse],
)
def get_questions(
    level_name: str,
    month_number: int,
    story_number: int,
    repo: HierarchyRepository = Depends(get_repository),
):
    questions = repo.list_questions_for_story(level_name, month_number, story_number)
    return [_question_response(q) for q in questions]


@router.get("/get-recent-stories", response_model=list[RecentStoryResponse])
def get_recent_stories(
    days: int | None = Query(None, ge=1, le=365),
    repo: HierarchyRepository = Depends(get_repository),
):
    window_days = days or get_settings().recent_window_days
    stories = repo.list_recent_stories(window_days)
    if not stories:
        raise HTTPException(
            status_code=404,
            detail=f"No stories found in the last {window_days} days",
        )
    return [
        RecentStoryResponse(
            levelName=story.level_name,
            monthNumber=story.month_number,
            storyNumber=story.story_number,
            storyName=story.story_name,
            storyCreatedAt=_timestamp(story.story_created_at),
        )
        for story in stories
    ]


@router.delete(
    "/delete-story/{level_name}/{month_number}/{story_number}",
    response_model=DeleteStoryResponse,
)
def delete_story(
    level_name: str,
    month_number: int,
    story_number: int,
    repo: HierarchyRepository = Depends(get_repository),
):
    result = repo.delete_story(level_name, month_number, story_number)
    return DeleteStoryResponse(
        message=result.message, levelDeleted=result.level_deleted
    )
