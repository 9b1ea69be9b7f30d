import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from db_pool import SQLiteConnectionPool
from engines.aggregation import rate
from schemas import EssayEvaluation, FeedbackResult, ProgressAnalysis, Recommendation

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

STARS_PER_CORRECT = 10


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_iso(value: Optional[datetime] = None) -> str:
    dt = value or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              id          TEXT PRIMARY KEY,
              name        TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS competencies (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              subject     TEXT NOT NULL,
              number      INTEGER NOT NULL,
              description TEXT NOT NULL DEFAULT '',
              UNIQUE(subject, number)
            );

            CREATE TABLE IF NOT EXISTS skills (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              competency_id INTEGER NOT NULL,
              number        INTEGER NOT NULL,
              description   TEXT NOT NULL DEFAULT '',
              UNIQUE(competency_id, number),
              FOREIGN KEY(competency_id) REFERENCES competencies(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS questions (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              subject        TEXT NOT NULL,
              skill_id       INTEGER,
              difficulty     REAL NOT NULL DEFAULT 0.5 CHECK (difficulty BETWEEN 0 AND 1),
              statement      TEXT NOT NULL,
              alternatives   TEXT NOT NULL DEFAULT '{}',
              correct_answer TEXT NOT NULL,
              created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE SET NULL
            );

            CREATE INDEX IF NOT EXISTS idx_questions_subject ON questions(subject);

            CREATE TABLE IF NOT EXISTS answers (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id            TEXT NOT NULL,
              question_id           INTEGER NOT NULL,
              chosen_answer         TEXT NOT NULL,
              correct               INTEGER NOT NULL CHECK (correct IN (0, 1)),
              response_time_seconds REAL,
              answered_at           TEXT NOT NULL,
              FOREIGN KEY(learner_id) REFERENCES learners(id) ON DELETE CASCADE,
              FOREIGN KEY(question_id) REFERENCES questions(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_answers_learner ON answers(learner_id, answered_at DESC);

            CREATE TABLE IF NOT EXISTS study_sessions (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id      TEXT NOT NULL,
              subject         TEXT NOT NULL,
              started_at      TEXT NOT NULL,
              finished_at     TEXT,
              total_questions INTEGER NOT NULL DEFAULT 0,
              correct_count   INTEGER NOT NULL DEFAULT 0,
              accuracy_pct    REAL NOT NULL DEFAULT 0,
              FOREIGN KEY(learner_id) REFERENCES learners(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_learner ON study_sessions(learner_id, subject, started_at DESC);

            CREATE TABLE IF NOT EXISTS skill_progress (
              learner_id     TEXT NOT NULL,
              skill_id       INTEGER NOT NULL,
              total_answered INTEGER NOT NULL DEFAULT 0,
              correct_count  INTEGER NOT NULL DEFAULT 0,
              updated_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (learner_id, skill_id),
              FOREIGN KEY(learner_id) REFERENCES learners(id) ON DELETE CASCADE,
              FOREIGN KEY(skill_id) REFERENCES skills(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS ai_feedback (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id  TEXT NOT NULL,
              question_id INTEGER,
              answer_id   INTEGER,
              payload     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS study_recommendations (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id   TEXT NOT NULL,
              subject      TEXT NOT NULL,
              type         TEXT NOT NULL CHECK (type IN ('study','practice','review')),
              content      TEXT NOT NULL,
              priority     INTEGER NOT NULL CHECK (priority BETWEEN 1 AND 5),
              focus_skills TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_recommendations_learner ON study_recommendations(learner_id, subject);

            CREATE TABLE IF NOT EXISTS learning_profiles (
              learner_id     TEXT NOT NULL,
              subject        TEXT NOT NULL,
              current_level  REAL NOT NULL DEFAULT 0.5,
              strengths      TEXT,
              weaknesses     TEXT,
              learning_style TEXT,
              updated_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (learner_id, subject)
            );

            CREATE TABLE IF NOT EXISTS essays (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id       TEXT NOT NULL,
              theme            TEXT NOT NULL,
              text             TEXT NOT NULL,
              word_count       INTEGER NOT NULL DEFAULT 0,
              total_score      INTEGER NOT NULL CHECK (total_score BETWEEN 0 AND 1000),
              criteria         TEXT NOT NULL,
              general_comments TEXT,
              suggestions      TEXT,
              created_at       TEXT NOT NULL
            );
            """
        )
        con.commit()


# -------------- seed / write helpers --------------
def ensure_learner(learner_id: str, name: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO learners(id, name) VALUES (?, ?)
        ON CONFLICT(id) DO UPDATE SET name = COALESCE(excluded.name, learners.name)
        """,
        (learner_id, name),
    )


def upsert_competency(subject: str, number: int, description: str = "") -> int:
    _exec(
        """
        INSERT INTO competencies(subject, number, description) VALUES (?,?,?)
        ON CONFLICT(subject, number) DO UPDATE SET description = excluded.description
        """,
        (subject.upper(), int(number), description),
    )
    rows = _query(
        "SELECT id FROM competencies WHERE subject = ? AND number = ?",
        (subject.upper(), int(number)),
    )
    return int(rows[0]["id"])


def upsert_skill(competency_id: int, number: int, description: str = "") -> int:
    _exec(
        """
        INSERT INTO skills(competency_id, number, description) VALUES (?,?,?)
        ON CONFLICT(competency_id, number) DO UPDATE SET description = excluded.description
        """,
        (int(competency_id), int(number), description),
    )
    rows = _query(
        "SELECT id FROM skills WHERE competency_id = ? AND number = ?",
        (int(competency_id), int(number)),
    )
    return int(rows[0]["id"])


def upsert_question(
    subject: str,
    statement: str,
    alternatives: Mapping[str, str],
    correct_answer: str,
    *,
    skill_id: Optional[int] = None,
    difficulty: float = 0.5,
    question_id: Optional[int] = None,
) -> int:
    params = (
        subject.upper(),
        skill_id,
        float(difficulty),
        statement,
        json_dumps({str(k).upper(): v for k, v in dict(alternatives).items()}),
        correct_answer.strip().upper(),
    )
    if question_id is None:
        cur = _exec(
            """
            INSERT INTO questions(subject, skill_id, difficulty, statement, alternatives, correct_answer)
            VALUES (?,?,?,?,?,?)
            """,
            params,
        )
        return int(cur.lastrowid)
    _exec(
        """
        INSERT INTO questions(id, subject, skill_id, difficulty, statement, alternatives, correct_answer)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          subject = excluded.subject,
          skill_id = excluded.skill_id,
          difficulty = excluded.difficulty,
          statement = excluded.statement,
          alternatives = excluded.alternatives,
          correct_answer = excluded.correct_answer
        """,
        (int(question_id), *params),
    )
    return int(question_id)


def get_question(question_id: int) -> Optional[Dict[str, Any]]:
    """Return the question as a ``QuestionContext``-shaped dict."""
    rows = _query(
        """
        SELECT q.id, q.subject, q.skill_id, q.difficulty, q.statement, q.alternatives,
               q.correct_answer, s.number AS skill_number
        FROM questions q
        LEFT JOIN skills s ON s.id = q.skill_id
        WHERE q.id = ?
        """,
        (int(question_id),),
    )
    if not rows:
        return None
    row = rows[0]
    alternatives = _decode_json_field(row["alternatives"])
    return {
        "question_id": row["id"],
        "subject": row["subject"],
        "skill_id": row["skill_id"],
        "skill_number": row["skill_number"],
        "difficulty": row["difficulty"],
        "statement": row["statement"],
        "alternatives": alternatives if isinstance(alternatives, dict) else {},
        "correct_answer": row["correct_answer"],
    }


def record_answer(
    learner_id: str,
    question_id: int,
    chosen_answer: str,
    response_time_seconds: Optional[float] = None,
    answered_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Store an answer and bump the learner's progress on the question's skill."""
    question = get_question(question_id)
    if question is None:
        raise KeyError(f"Unknown question id: {question_id}")

    chosen = (chosen_answer or "").strip().upper()
    correct = chosen == question["correct_answer"]
    ensure_learner(learner_id)
    with _conn() as con:
        cur = con.execute(
            """
            INSERT INTO answers(learner_id, question_id, chosen_answer, correct, response_time_seconds, answered_at)
            VALUES (?,?,?,?,?,?)
            """,
            (learner_id, int(question_id), chosen, int(correct), response_time_seconds, _utc_iso(answered_at)),
        )
        answer_id = int(cur.lastrowid)
        if question["skill_id"] is not None:
            con.execute(
                """
                INSERT INTO skill_progress(learner_id, skill_id, total_answered, correct_count, updated_at)
                VALUES (?, ?, 1, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(learner_id, skill_id) DO UPDATE SET
                  total_answered = skill_progress.total_answered + 1,
                  correct_count = skill_progress.correct_count + excluded.correct_count,
                  updated_at = CURRENT_TIMESTAMP
                """,
                (learner_id, question["skill_id"], int(correct)),
            )
        con.commit()
    return {"answer_id": answer_id, "correct": correct, "question": question}


def record_session(
    learner_id: str,
    subject: str,
    total_questions: int,
    correct_count: int,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> int:
    ensure_learner(learner_id)
    started = _utc_iso(started_at)
    cur = _exec(
        """
        INSERT INTO study_sessions(learner_id, subject, started_at, finished_at,
                                   total_questions, correct_count, accuracy_pct)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            learner_id,
            subject.upper(),
            started,
            _utc_iso(finished_at) if finished_at else started,
            int(total_questions),
            int(correct_count),
            rate(correct_count, total_questions),
        ),
    )
    return int(cur.lastrowid)


# -------------- storage reader --------------
def fetch_answer_history(learner_id: str, subject: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT a.correct, a.response_time_seconds, a.answered_at
        FROM answers a
        JOIN questions q ON q.id = a.question_id
        WHERE a.learner_id = ? AND q.subject = ?
        ORDER BY a.answered_at
        """,
        (learner_id, subject.upper()),
    )
    return [
        {
            "correct": bool(row["correct"]),
            "response_time_seconds": row["response_time_seconds"],
            "answered_at": _parse_timestamp(row["answered_at"]),
        }
        for row in rows
    ]


def fetch_skill_progress(learner_id: str, subject: str) -> list[Dict[str, Any]]:
    """All skills of ``subject`` with the learner's counts (zero when unanswered)."""
    rows = _query(
        """
        SELECT s.number AS skill_number, s.description,
               c.number AS competency_number, c.description AS competency_description,
               COALESCE(sp.total_answered, 0) AS total_answered,
               COALESCE(sp.correct_count, 0) AS correct_count
        FROM skills s
        JOIN competencies c ON c.id = s.competency_id
        LEFT JOIN skill_progress sp ON sp.skill_id = s.id AND sp.learner_id = ?
        WHERE c.subject = ?
        ORDER BY c.number, s.number
        """,
        (learner_id, subject.upper()),
    )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["skill_code"] = f"H{row['skill_number']}"
        item["competency_code"] = f"C{row['competency_number']}"
        data.append(item)
    return data


def fetch_taxonomy_entry(skill_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT s.number, s.description, c.number AS competency_number,
               c.description AS competency_description
        FROM skills s
        JOIN competencies c ON c.id = s.competency_id
        WHERE s.id = ?
        """,
        (int(skill_id),),
    )
    if not rows:
        return None
    row = rows[0]
    return {
        "code": f"H{row['number']}",
        "description": row["description"],
        "competency_code": f"C{row['competency_number']}",
        "competency_description": row["competency_description"],
    }


def fetch_skill_accuracy(learner_id: str, skill_id: int) -> Dict[str, Any]:
    rows = _query(
        "SELECT total_answered, correct_count FROM skill_progress WHERE learner_id = ? AND skill_id = ?",
        (learner_id, int(skill_id)),
    )
    if not rows:
        return {"total_answered": 0, "correct_count": 0}
    return dict(rows[0])


def fetch_recent_sessions(learner_id: str, subject: str, limit: int = 5) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT started_at, finished_at, total_questions, correct_count, accuracy_pct
        FROM study_sessions
        WHERE learner_id = ? AND subject = ? AND finished_at IS NOT NULL
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (learner_id, subject.upper(), int(limit)),
    )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["started_at"] = _parse_timestamp(row["started_at"])
        data.append(item)
    return data


def fetch_learner_profile(learner_id: str, subject: Optional[str] = None) -> Dict[str, Any]:
    """Learner name plus the stored learning profile for ``subject`` (if any)."""
    profile: Dict[str, Any] = {"learner_id": learner_id, "name": None}
    rows = _query("SELECT name FROM learners WHERE id = ?", (learner_id,))
    if rows:
        profile["name"] = rows[0]["name"]
    if subject:
        rows = _query(
            """
            SELECT current_level, strengths, weaknesses, learning_style, updated_at
            FROM learning_profiles WHERE learner_id = ? AND subject = ?
            """,
            (learner_id, subject.upper()),
        )
        if rows:
            profile.update(dict(rows[0]))
    return profile


def fetch_overall_progress(learner_id: str) -> Dict[str, Any]:
    rows = _query(
        "SELECT COUNT(*) AS total, COALESCE(SUM(correct), 0) AS correct FROM answers WHERE learner_id = ?",
        (learner_id,),
    )
    total = int(rows[0]["total"] or 0)
    correct = int(rows[0]["correct"] or 0)
    return {
        "total_answered": total,
        "correct_count": correct,
        "accuracy_pct": rate(correct, total),
        "stars": correct // STARS_PER_CORRECT,
    }


# -------------- storage writer --------------
def persist_feedback(
    learner_id: str,
    question_id: Optional[int],
    answer_id: Optional[int],
    result: FeedbackResult,
) -> int:
    cur = _exec(
        "INSERT INTO ai_feedback(learner_id, question_id, answer_id, payload) VALUES (?,?,?,?)",
        (learner_id, question_id, answer_id, result.model_dump_json()),
    )
    return int(cur.lastrowid)


def persist_recommendation(learner_id: str, subject: str, recommendation: Recommendation) -> int:
    cur = _exec(
        """
        INSERT INTO study_recommendations(learner_id, subject, type, content, priority, focus_skills)
        VALUES (?,?,?,?,?,?)
        """,
        (
            learner_id,
            subject.upper(),
            recommendation.type,
            recommendation.content,
            recommendation.priority,
            json_dumps(recommendation.focus_skills),
        ),
    )
    return int(cur.lastrowid)


def persist_learning_profile(
    learner_id: str,
    subject: str,
    analysis: ProgressAnalysis,
    strengths: Optional[Iterable[str]] = None,
) -> None:
    """Upsert the learner's profile; weaknesses are the analysis focus areas."""
    strong = ", ".join(strengths) if strengths is not None else None
    _exec(
        """
        INSERT INTO learning_profiles(learner_id, subject, current_level, strengths, weaknesses,
                                      learning_style, updated_at)
        VALUES (?,?,?,?,?,'adaptativo',CURRENT_TIMESTAMP)
        ON CONFLICT(learner_id, subject) DO UPDATE SET
          current_level = excluded.current_level,
          strengths = excluded.strengths,
          weaknesses = excluded.weaknesses,
          learning_style = excluded.learning_style,
          updated_at = CURRENT_TIMESTAMP
        """,
        (learner_id, subject.upper(), analysis.ideal_difficulty, strong, ", ".join(analysis.focus_areas)),
    )


def persist_essay_evaluation(learner_id: str, theme: str, text: str, evaluation: EssayEvaluation) -> int:
    cur = _exec(
        """
        INSERT INTO essays(learner_id, theme, text, word_count, total_score, criteria,
                           general_comments, suggestions, created_at)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            learner_id,
            evaluation.restated_theme or theme,
            text,
            evaluation.word_count,
            evaluation.total_score,
            json_dumps([criterion.model_dump() for criterion in evaluation.criteria]),
            evaluation.general_comments,
            json_dumps(evaluation.suggestions),
            _utc_iso(evaluation.created_at),
        ),
    )
    return int(cur.lastrowid)


def list_recommendations(learner_id: str, subject: Optional[str] = None, limit: int = 20) -> list[Dict[str, Any]]:
    if subject:
        rows = _query(
            """
            SELECT id, subject, type, content, priority, focus_skills, created_at
            FROM study_recommendations WHERE learner_id = ? AND subject = ?
            ORDER BY id DESC LIMIT ?
            """,
            (learner_id, subject.upper(), int(limit)),
        )
    else:
        rows = _query(
            """
            SELECT id, subject, type, content, priority, focus_skills, created_at
            FROM study_recommendations WHERE learner_id = ?
            ORDER BY id DESC LIMIT ?
            """,
            (learner_id, int(limit)),
        )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["focus_skills"] = _decode_json_field(item.get("focus_skills")) or []
        data.append(item)
    return data


def get_essay(essay_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM essays WHERE id = ?", (int(essay_id),))
    if not rows:
        return None
    item = dict(rows[0])
    item["criteria"] = _decode_json_field(item.get("criteria")) or []
    item["suggestions"] = _decode_json_field(item.get("suggestions")) or []
    return item
