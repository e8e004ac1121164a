"""
Database service for the exam preparation engine
"""

import os
import sqlite3
import weakref
from pathlib import Path
from typing import Optional, List, Dict, Any
from weakref import WeakSet
from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session

from ..exceptions import DataIntegrityError, NotFoundError
from ..models import Base, User, Topic, StudyPlan, DEFAULT_AVAILABLE_DAYS
from .settings_config_service import get_settings_service


class DatabaseService:
    """Database service for managing SQLite connections and sessions"""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database service"""
        if db_path is None:
            db_path = os.getenv(
                "EXAMPREP_DB_PATH",
                get_settings_service().get("database", "path", "exam_prep.db"),
            )

        self.db_path = Path(db_path)
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker[Session]] = None
        # Track open sessions to ensure cleanup in tests
        self._open_sessions: WeakSet[Session] = WeakSet()

        from .logging import get_logging_service

        self.logger = get_logging_service().get_logger("database")

        self._setup_engine()
        self._create_tables()

    def _setup_engine(self):
        """Set up SQLAlchemy engine with SQLite optimizations"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        database_url = f"sqlite:///{self.db_path}"

        if os.getenv("EXAMPREP_TEST_MODE"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=bool(os.getenv("EXAMPREP_DEV_MODE")),
                connect_args={"check_same_thread": False},
                pool_pre_ping=True,
                pool_recycle=3600,
            )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            if isinstance(dbapi_connection, sqlite3.Connection):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.execute("PRAGMA temp_store=MEMORY")
                cursor.close()

        weakref.finalize(self, self.engine.dispose)

        # Engine services hand ORM objects back to callers after the session closes
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def _create_tables(self):
        """Create all database tables"""
        if self.engine is None:
            raise RuntimeError("Database engine not initialized")
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a database session"""
        if self.SessionLocal is None:
            raise RuntimeError("Database session factory not initialized")
        session = self.SessionLocal()
        self._open_sessions.add(session)
        return session

    def close(self):
        """Close database connections"""
        if self.engine:
            for session in list(self._open_sessions):
                session.close()
            self.engine.dispose()

    # --- Users ---

    def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        available_days: Optional[List[str]] = None,
        study_hours_per_day: float = 2,
        preferred_study_time=None,
        study_start_hour: int = 9,
        study_end_hour: int = 17,
    ) -> User:
        """Create a new learner"""
        user = User(
            username=username,
            email=email,
            name=name,
            available_days=list(available_days or DEFAULT_AVAILABLE_DAYS),
            study_hours_per_day=study_hours_per_day,
            study_start_hour=study_start_hour,
            study_end_hour=study_end_hour,
        )
        if preferred_study_time is not None:
            user.preferred_study_time = preferred_study_time
        try:
            with self.get_session() as session:
                session.add(user)
                session.commit()
                session.refresh(user)
                return user
        except IntegrityError as e:
            raise DataIntegrityError(f"Failed to create user: {e.orig}") from e

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        with self.get_session() as session:
            return session.get(User, user_id)

    def update_user_preferences(self, user_id: int, updates: Dict[str, Any]) -> User:
        """Update availability preferences for a learner"""
        allowed = {
            "available_days",
            "study_hours_per_day",
            "preferred_study_time",
            "study_start_hour",
            "study_end_hour",
            "name",
            "email",
        }
        with self.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            for key, value in updates.items():
                if key in allowed and value is not None:
                    setattr(user, key, value)
            session.commit()
            session.refresh(user)
            return user

    def list_users_with_plans(self) -> List[User]:
        """Get every user that owns a study plan"""
        with self.get_session() as session:
            stmt = select(User).join(StudyPlan, StudyPlan.user_id == User.id)
            return list(session.execute(stmt).scalars().all())

    # --- Topics ---

    def create_topic(self, topic: Topic) -> Topic:
        """Create a new topic after checking its prerequisites exist"""
        from .topic_graph import TopicGraph

        with self.get_session() as session:
            existing = list(session.execute(select(Topic)).scalars().all())
            known_ids = {t.id for t in existing}
            missing = [p for p in (topic.prerequisite_ids or []) if p not in known_ids]
            if missing:
                raise NotFoundError(f"Prerequisite topics not found: {missing}")
            session.add(topic)
            try:
                session.flush()
            except IntegrityError as e:
                raise DataIntegrityError(f"Failed to create topic: {e.orig}") from e
            # New edges can only close a cycle through the new node
            TopicGraph(existing + [topic]).assert_acyclic()
            session.commit()
            session.refresh(topic)
            return topic

    def get_topic(self, topic_id: int) -> Optional[Topic]:
        """Get topic by ID"""
        with self.get_session() as session:
            return session.get(Topic, topic_id)

    def list_topics(self) -> List[Topic]:
        """Get all topics ordered by ID"""
        with self.get_session() as session:
            return list(session.execute(select(Topic).order_by(Topic.id)).scalars().all())

    # --- Plans ---

    def get_plan_for_user(self, user_id: int) -> Optional[StudyPlan]:
        """Get the study plan owned by a user"""
        with self.get_session() as session:
            return session.execute(
                select(StudyPlan).where(StudyPlan.user_id == user_id)
            ).scalar_one_or_none()

    def get_plan(self, plan_id: int) -> Optional[StudyPlan]:
        """Get study plan by ID"""
        with self.get_session() as session:
            return session.get(StudyPlan, plan_id)


# Global database service instance
_db_service: Optional[DatabaseService] = None


def get_db_service() -> DatabaseService:
    """Get the global database service instance"""
    global _db_service
    if _db_service is None:
        _db_service = DatabaseService()
    return _db_service


def init_db_service(db_path: Optional[str] = None) -> DatabaseService:
    """Initialize the global database service"""
    global _db_service
    if _db_service is not None:
        _db_service.close()
    _db_service = DatabaseService(db_path)
    return _db_service
