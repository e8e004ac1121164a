"""
Test configuration and setup for the exam preparation engine
"""

import pytest
import os
import sys
from pathlib import Path
import tempfile
import shutil
from datetime import datetime, timedelta

# Make the repo root importable so `src.core` / `src.api` resolve
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment variables
os.environ["EXAMPREP_TEST_MODE"] = "1"
_session_log_dir = tempfile.mkdtemp(prefix="examprep_logs_")
os.environ.setdefault("EXAMPREP_LOG_DIR", _session_log_dir)

# Reset settings service to ensure it loads env-test.properties
from src.core.services.settings_config_service import reset_settings_service

reset_settings_service()


# Monday 09:00, so weekday arithmetic in tests is predictable
REFERENCE_NOW = datetime(2030, 1, 7, 9, 0)


def reset_service_singletons():
    """Clear every engine singleton so it binds to the current test database"""
    import src.core.services.plan_builder as plan_builder_module
    import src.core.services.readiness_service as readiness_module
    import src.core.services.task_status_service as status_module
    import src.core.services.monitor_service as monitor_module
    import src.core.services.adaptation_service as adaptation_module
    import src.core.services.remediation_service as remediation_module
    import src.core.services.cleanup_service as cleanup_module
    import src.core.services.orchestrator as orchestrator_module
    import src.core.services.agent_scheduler as scheduler_module
    import src.core.services.rate_limiter as rate_limiter_module
    import src.core.services.plan_lock as plan_lock_module
    from src.core.services.summarizer import reset_summarizer

    plan_builder_module._plan_builder_service = None
    readiness_module._readiness_service = None
    status_module._task_status_service = None
    monitor_module._monitor_service = None
    adaptation_module._adaptation_service = None
    remediation_module._remediation_service = None
    cleanup_module._cleanup_service = None
    orchestrator_module._orchestrator = None
    scheduler_module._agent_scheduler = None
    rate_limiter_module._rate_limiter = None
    plan_lock_module._plan_locks = None
    reset_summarizer()


@pytest.fixture(scope="function")
def test_data_dir():
    """Create a temporary test data directory"""
    temp_dir = tempfile.mkdtemp(prefix="examprep_test_")
    yield Path(temp_dir)

    from src.core.services.database import get_db_service

    get_db_service().close()
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_db_path(test_data_dir):
    """Create a test database path"""
    return test_data_dir / "test.db"


@pytest.fixture(autouse=True)
def setup_test_env(test_db_path):
    """Set up test environment"""
    os.environ["EXAMPREP_DB_PATH"] = str(test_db_path)

    from src.core.services.database import init_db_service

    init_db_service(str(test_db_path))
    reset_service_singletons()

    yield

    reset_service_singletons()
    if "EXAMPREP_DB_PATH" in os.environ:
        del os.environ["EXAMPREP_DB_PATH"]


@pytest.fixture
def db_service(test_db_path):
    """Provide the database service for tests"""
    from src.core.services.database import get_db_service

    service = get_db_service()
    yield service


@pytest.fixture
def client(db_service):
    """FastAPI TestClient wired to the same test database."""
    from fastapi.testclient import TestClient
    from src.api.main import app
    from src.api.dependencies import get_db

    def _override_get_db():
        session = db_service.get_session()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def now():
    return REFERENCE_NOW


@pytest.fixture
def learner(db_service):
    """Learner studying weekday mornings, two hours a day"""
    return db_service.create_user(
        username="learner",
        email="learner@test.com",
        name="Test Learner",
        available_days=["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
        study_hours_per_day=2,
    )


@pytest.fixture
def topics(db_service):
    """Three topics where pharmacology depends on the two foundations"""
    from src.core.models import Topic, TopicCategory, Difficulty

    safety = db_service.create_topic(
        Topic(
            name="Infection Control",
            category=TopicCategory.SAFETY_AND_INFECTION_CONTROL,
            difficulty=Difficulty.EASY,
            importance=6,
        )
    )
    care = db_service.create_topic(
        Topic(
            name="Care Coordination",
            category=TopicCategory.MANAGEMENT_OF_CARE,
            difficulty=Difficulty.MEDIUM,
            importance=8,
        )
    )
    pharm = db_service.create_topic(
        Topic(
            name="Dosage Calculation",
            category=TopicCategory.PHARMACOLOGICAL_THERAPIES,
            difficulty=Difficulty.HARD,
            importance=9,
            prerequisite_ids=[safety.id, care.id],
        )
    )
    return [safety, care, pharm]


@pytest.fixture
def plan_result(learner, topics, now):
    """A built plan with the exam four weeks out"""
    from src.core.services.plan_builder import get_plan_builder_service

    return get_plan_builder_service().build_plan(
        learner.id, now + timedelta(days=28), now=now
    )


def make_task(plan_id, topic_id, start, minutes=60, **kwargs):
    """Build an unsaved Task with consistent times"""
    from src.core.models import Task, TaskType

    fields = {
        "plan_id": plan_id,
        "title": kwargs.pop("title", f"Task {start:%Y-%m-%d %H:%M}"),
        "type": kwargs.pop("type", TaskType.READING),
        "start_time": start,
        "end_time": start + timedelta(minutes=minutes),
        "duration": minutes,
        "topic_id": topic_id,
        "task_metadata": kwargs.pop("task_metadata", {}),
    }
    fields.update(kwargs)
    return Task(**fields)


@pytest.fixture
def empty_plan(db_service, learner, topics, now):
    """A plan row with no tasks, for hand-built calendars"""
    from src.core.models import StudyPlan

    with db_service.get_session() as session:
        plan = StudyPlan(
            user_id=learner.id,
            exam_date=now + timedelta(days=28),
            start_date=now,
            end_date=now + timedelta(days=28),
            weak_areas=[],
        )
        session.add(plan)
        session.commit()
        session.refresh(plan)
        return plan
