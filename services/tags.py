# taskflow/services/tags.py
from __future__ import annotations

import re
from typing import Callable, Dict, Iterable, List, Optional

from sqlmodel import Session, func, select

from core.logs import get_logger
from models.tag import DEFAULT_TAG_COLOR, Tag, TaskTag
from storage.db import get_session
from utils.datetime_utils import utc_now


logger = get_logger("tags")

NAME_RE = re.compile(r"^.{1,40}$")
COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


class TagValidationError(ValueError):
    pass


def validate_tag_name(name: str) -> str:
    name = (name or "").strip()
    if not NAME_RE.match(name):
        raise TagValidationError("Tag name must be between 1 and 40 characters")
    return name


def validate_tag_color(color_hex: str) -> str:
    if not COLOR_RE.match(color_hex or ""):
        raise TagValidationError("Color must be in #RRGGBB format")
    return color_hex.upper()


def ensure_tags(session: Session, user_id: str, names: Iterable[str]) -> List[Tag]:
    """Resolve tag names of ``user_id`` inside ``session``, creating the missing ones."""

    wanted = sorted({validate_tag_name(str(n)) for n in names or () if str(n).strip()})
    if not wanted:
        return []
    stmt = select(Tag).where(Tag.user_id == user_id, Tag.name.in_(wanted))
    found = {tag.name: tag for tag in session.exec(stmt)}
    for name in wanted:
        if name not in found:
            tag = Tag(user_id=user_id, name=name, color_hex=DEFAULT_TAG_COLOR)
            session.add(tag)
            found[name] = tag
    session.flush()
    return [found[name] for name in wanted]


class TagService:
    """Tags of one user; tasks refer to them by name."""

    def __init__(self, user_id: str, session_factory: Callable[[], Session] = get_session):
        self.user_id = user_id
        self._session_factory = session_factory

    def list(self) -> List[Tag]:
        with self._session_factory() as session:
            stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name.asc())
            return list(session.exec(stmt))

    def usage(self) -> Dict[str, int]:
        """Number of tasks carrying each tag."""

        with self._session_factory() as session:
            stmt = (
                select(Tag.name, func.count(TaskTag.task_id))
                .join(TaskTag, Tag.id == TaskTag.tag_id, isouter=True)
                .where(Tag.user_id == self.user_id)
                .group_by(Tag.id)
            )
            return {name: count for name, count in session.exec(stmt)}

    def get_by_name(self, name: str) -> Optional[Tag]:
        with self._session_factory() as session:
            return self._find(session, name.strip())

    def create(self, name: str, color_hex: str = DEFAULT_TAG_COLOR) -> Tag:
        name = validate_tag_name(name)
        normalized_color = validate_tag_color(color_hex)
        with self._session_factory() as session:
            if self._find(session, name) is not None:
                raise TagValidationError(f"Tag {name!r} already exists")
            tag = Tag(user_id=self.user_id, name=name, color_hex=normalized_color)
            session.add(tag)
            session.commit()
            session.refresh(tag)
            return tag

    def rename(self, tag_id: int, new_name: str) -> Optional[Tag]:
        new_name = validate_tag_name(new_name)
        with self._session_factory() as session:
            tag = self._owned(session, tag_id)
            if not tag:
                return None
            clash = self._find(session, new_name)
            if clash is not None and clash.id != tag.id:
                raise TagValidationError(f"Tag {new_name!r} already exists")
            tag.name = new_name
            tag.updated_at = utc_now()
            session.add(tag)
            session.commit()
            session.refresh(tag)
            return tag

    def recolor(self, tag_id: int, color_hex: str) -> Optional[Tag]:
        normalized_color = validate_tag_color(color_hex)
        with self._session_factory() as session:
            tag = self._owned(session, tag_id)
            if not tag:
                return None
            tag.color_hex = normalized_color
            tag.updated_at = utc_now()
            session.add(tag)
            session.commit()
            session.refresh(tag)
            return tag

    def delete(self, tag_id: int) -> None:
        with self._session_factory() as session:
            tag = self._owned(session, tag_id)
            if not tag:
                return
            # Remove associations first due to composite PK
            for link in session.exec(select(TaskTag).where(TaskTag.tag_id == tag_id)):
                session.delete(link)
            session.delete(tag)
            session.commit()
            logger.info("Deleted tag %s", tag_id)

    # ------------------------------------------------------------------
    def _owned(self, session: Session, tag_id: int) -> Optional[Tag]:
        tag = session.get(Tag, tag_id)
        if tag is None or tag.user_id != self.user_id:
            return None
        return tag

    def _find(self, session: Session, name: str) -> Optional[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id, Tag.name == name)
        return session.exec(stmt).first()


__all__ = [
    "DEFAULT_TAG_COLOR",
    "TagService",
    "TagValidationError",
    "ensure_tags",
    "validate_tag_color",
    "validate_tag_name",
]
