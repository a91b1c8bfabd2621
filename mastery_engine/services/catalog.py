"""Read-only access to the competency / topic / question catalog.

The catalog is seeded outside the engine. Anything that provides the three
coroutines of CatalogReader can stand in for the SQL-backed reader.
"""

import logging
from typing import Protocol

from mastery_engine.models import Competency, Subtopic, Topic

logger = logging.getLogger(__name__)


class CatalogReader(Protocol):
    async def list_competencies(self) -> list[Competency]: ...

    async def list_topics(self) -> list[Topic]: ...

    async def list_question_ids(
        self, competency_id: str, limit: int, user_id: str | None = None
    ) -> list[str]: ...


class SqlCatalogReader:
    """Catalog reader over the seeded catalog tables.

    Competencies are cached for the lifetime of the reader (one request);
    the catalog never changes underneath a running request.
    """

    def __init__(self, db):
        self.db = db
        self._competencies: list[Competency] | None = None

    async def list_competencies(self) -> list[Competency]:
        if self._competencies is None:
            cursor = await self.db.execute(
                "SELECT id, code, name, description FROM competencies ORDER BY code"
            )
            rows = await cursor.fetchall()
            self._competencies = [Competency(**dict(r)) for r in rows]
            logger.debug("Loaded %d competencies from catalog", len(self._competencies))
        return self._competencies

    async def list_topics(self) -> list[Topic]:
        cursor = await self.db.execute(
            """SELECT t.id AS topic_id, t.name AS topic_name,
                      s.id AS subtopic_id, s.name AS subtopic_name,
                      sc.competency_id
               FROM topics t
               LEFT JOIN subtopics s ON s.topic_id = t.id
               LEFT JOIN subtopic_competencies sc ON sc.subtopic_id = s.id
               ORDER BY t.position, t.id, s.position, s.id, sc.competency_id"""
        )
        rows = await cursor.fetchall()

        topics: dict[str, Topic] = {}
        subtopics: dict[str, Subtopic] = {}
        for row in rows:
            topic = topics.get(row["topic_id"])
            if topic is None:
                topic = Topic(id=row["topic_id"], name=row["topic_name"])
                topics[topic.id] = topic
            if row["subtopic_id"] is None:
                continue
            subtopic = subtopics.get(row["subtopic_id"])
            if subtopic is None:
                subtopic = Subtopic(id=row["subtopic_id"], name=row["subtopic_name"])
                subtopics[subtopic.id] = subtopic
                topic.subtopics.append(subtopic)
            if row["competency_id"] is not None:
                subtopic.competency_ids.append(row["competency_id"])
        return list(topics.values())

    async def list_question_ids(
        self, competency_id: str, limit: int, user_id: str | None = None
    ) -> list[str]:
        """Up to `limit` question ids for a competency.

        With a user id, questions the user has not answered in any practice
        session come first; answered ones fill the rest, least answered first.
        """
        if limit <= 0:
            return []
        if user_id is None:
            cursor = await self.db.execute(
                """SELECT id FROM questions
                   WHERE competency_id = ?
                   ORDER BY id
                   LIMIT ?""",
                (competency_id, limit),
            )
        else:
            cursor = await self.db.execute(
                """SELECT q.id, COUNT(a.id) AS times_answered
                   FROM questions q
                   LEFT JOIN practice_session_answers a
                       ON a.question_id = q.id AND a.user_id = ?
                   WHERE q.competency_id = ?
                   GROUP BY q.id
                   ORDER BY times_answered, q.id
                   LIMIT ?""",
                (user_id, competency_id, limit),
            )
        rows = await cursor.fetchall()
        return [r["id"] for r in rows]
