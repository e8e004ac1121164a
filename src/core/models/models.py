"""
SQLAlchemy models for the exam preparation engine

This module contains the database models for learners, topics, study plans,
the task calendar and the monitoring/adaptation audit trail.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Enum as SQLEnum,
    Index,
    Float,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.sqlite import JSON

Base = declarative_base()


class TopicCategory(enum.Enum):
    """Exam domains a topic belongs to"""

    MANAGEMENT_OF_CARE = "MANAGEMENT_OF_CARE"
    SAFETY_AND_INFECTION_CONTROL = "SAFETY_AND_INFECTION_CONTROL"
    HEALTH_PROMOTION = "HEALTH_PROMOTION"
    PSYCHOSOCIAL_INTEGRITY = "PSYCHOSOCIAL_INTEGRITY"
    BASIC_CARE_AND_COMFORT = "BASIC_CARE_AND_COMFORT"
    PHARMACOLOGICAL_THERAPIES = "PHARMACOLOGICAL_THERAPIES"
    REDUCTION_OF_RISK_POTENTIAL = "REDUCTION_OF_RISK_POTENTIAL"
    PHYSIOLOGICAL_ADAPTATION = "PHYSIOLOGICAL_ADAPTATION"


# Share of the exam each domain represents; used for the overall readiness score
CATEGORY_WEIGHTS = {
    TopicCategory.MANAGEMENT_OF_CARE: 0.20,
    TopicCategory.SAFETY_AND_INFECTION_CONTROL: 0.15,
    TopicCategory.HEALTH_PROMOTION: 0.10,
    TopicCategory.PSYCHOSOCIAL_INTEGRITY: 0.10,
    TopicCategory.BASIC_CARE_AND_COMFORT: 0.10,
    TopicCategory.PHARMACOLOGICAL_THERAPIES: 0.15,
    TopicCategory.REDUCTION_OF_RISK_POTENTIAL: 0.10,
    TopicCategory.PHYSIOLOGICAL_ADAPTATION: 0.10,
}


class Difficulty(enum.Enum):
    """Topic and task difficulty tiers"""

    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


DIFFICULTY_ORDER = [Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD]


class PreferredStudyTime(enum.Enum):
    """Time-of-day band a learner prefers"""

    MORNING = "MORNING"
    AFTERNOON = "AFTERNOON"
    EVENING = "EVENING"


class TaskType(enum.Enum):
    """Kinds of study work"""

    VIDEO = "VIDEO"
    QUIZ = "QUIZ"
    READING = "READING"
    PRACTICE = "PRACTICE"
    REVIEW = "REVIEW"


class TaskStatus(enum.Enum):
    """Task lifecycle states"""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class AlertType(enum.Enum):
    """Signals raised by the monitor and remediation engines"""

    MISSED_TASK = "MISSED_TASK"
    LOW_PERFORMANCE = "LOW_PERFORMANCE"
    SCHEDULE_DEVIATION = "SCHEDULE_DEVIATION"
    TOPIC_DIFFICULTY = "TOPIC_DIFFICULTY"
    STUDY_PATTERN = "STUDY_PATTERN"
    GENERAL = "GENERAL"
    REMEDIATION = "REMEDIATION"
    SCHEDULE_CHANGE = "SCHEDULE_CHANGE"


class AlertSeverity(enum.Enum):
    """Alert severities"""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AdaptationType(enum.Enum):
    """Calendar mutations recorded in the adaptation audit trail"""

    RESCHEDULE = "RESCHEDULE"
    DIFFICULTY_ADJUSTMENT = "DIFFICULTY_ADJUSTMENT"
    CONTENT_ADDITION = "CONTENT_ADDITION"
    PLAN_REBALANCE = "PLAN_REBALANCE"
    REMEDIAL_CONTENT = "REMEDIAL_CONTENT"


class RemediationActionType(enum.Enum):
    """Remediation actions whose effectiveness is tracked"""

    SCHEDULE_REVIEW = "SCHEDULE_REVIEW"
    ADJUST_DIFFICULTY = "ADJUST_DIFFICULTY"
    ADD_CONTENT = "ADD_CONTENT"
    GENERATE_SUGGESTION = "GENERATE_SUGGESTION"
    START_TUTOR_SESSION = "START_TUTOR_SESSION"
    RECOMMEND_CONTENT = "RECOMMEND_CONTENT"


class AgentType(enum.Enum):
    """Agents the orchestrator can run"""

    SCHEDULER = "scheduler"
    MONITOR = "monitor"
    ADAPTATION = "adaptation"
    REMEDIATION = "remediation"


class SequenceType(enum.Enum):
    """Fixed agent sequences"""

    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class ScheduleType(enum.Enum):
    """Agent scheduler entry kinds"""

    ONE_TIME = "ONE_TIME"
    RECURRING = "RECURRING"


DEFAULT_AVAILABLE_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]


class User(Base):
    """Learner with study availability preferences"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True)
    name = Column(String(200), nullable=True)
    available_days = Column(JSON, nullable=False, default=lambda: list(DEFAULT_AVAILABLE_DAYS))
    study_hours_per_day = Column(Float, nullable=False, default=2)
    preferred_study_time = Column(
        SQLEnum(PreferredStudyTime), nullable=False, default=PreferredStudyTime.MORNING
    )
    study_start_hour = Column(Integer, nullable=False, default=9)
    study_end_hour = Column(Integer, nullable=False, default=17)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    study_plan = relationship("StudyPlan", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"


class Topic(Base):
    """Exam topic with prerequisite edges"""

    __tablename__ = "topics"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    category = Column(SQLEnum(TopicCategory), nullable=False, index=True)
    difficulty = Column(SQLEnum(Difficulty), nullable=False, default=Difficulty.MEDIUM)
    importance = Column(Integer, nullable=False, default=5)  # 1-10
    estimated_duration = Column(Integer, nullable=False, default=60)  # minutes
    prerequisite_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    def __repr__(self):
        return f"<Topic(id={self.id}, name='{self.name}', category='{self.category}')>"


class StudyPlan(Base):
    """A learner's exam preparation plan (one per user)"""

    __tablename__ = "study_plans"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    exam_date = Column(DateTime, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_personalized = Column(Boolean, default=False, nullable=False)
    weak_areas = Column(JSON, nullable=False, default=list)  # diagnostic topic ids
    validation_report = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    user = relationship("User", back_populates="study_plan")
    tasks = relationship("Task", back_populates="plan", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<StudyPlan(id={self.id}, user_id={self.user_id}, exam_date={self.exam_date})>"


class Task(Base):
    """One schedulable unit of study work"""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey("study_plans.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(TaskType), nullable=False)
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.PENDING, index=True)
    start_time = Column(DateTime, nullable=True, index=True)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=False)  # minutes
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False, index=True)
    difficulty = Column(SQLEnum(Difficulty), nullable=False, default=Difficulty.MEDIUM)
    content_ref = Column(String(255), nullable=True)
    task_metadata = Column("metadata", JSON, nullable=False, default=dict)
    original_start_time = Column(DateTime, nullable=True)
    original_end_time = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    plan = relationship("StudyPlan", back_populates="tasks")
    topic = relationship("Topic")

    __table_args__ = (Index("idx_task_plan_start", "plan_id", "start_time"),)

    @property
    def is_remediation(self) -> bool:
        return bool((self.task_metadata or {}).get("is_remediation"))

    def __repr__(self):
        return (
            f"<Task(id={self.id}, plan_id={self.plan_id}, type='{self.type}', "
            f"status='{self.status}', start={self.start_time})>"
        )


class Performance(Base):
    """Outcome of one attempt at a task"""

    __tablename__ = "performances"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False, index=True)
    content_ref = Column(String(255), nullable=True)
    score = Column(Float, nullable=True)  # 0-100, null for ungraded work
    time_spent = Column(Integer, nullable=False, default=0)  # minutes
    completed = Column(Boolean, nullable=False, default=False)
    confidence = Column(Integer, nullable=False, default=3)  # 1-5
    answers = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    topic = relationship("Topic")

    def __repr__(self):
        return f"<Performance(id={self.id}, task_id={self.task_id}, score={self.score})>"


class ReadinessScore(Base):
    """Point-in-time readiness estimate (append-only history)"""

    __tablename__ = "readiness_scores"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("study_plans.id"), nullable=True)
    overall_score = Column(Float, nullable=False)
    category_scores = Column(JSON, nullable=False, default=dict)
    weak_areas = Column(JSON, nullable=False, default=list)
    strong_areas = Column(JSON, nullable=False, default=list)
    weak_categories = Column(JSON, nullable=False, default=list)
    projected_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)

    def __repr__(self):
        return f"<ReadinessScore(id={self.id}, user_id={self.user_id}, overall={self.overall_score})>"


class Alert(Base):
    """Signal raised for a learner's plan"""

    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("study_plans.id"), nullable=True)
    type = Column(SQLEnum(AlertType), nullable=False, index=True)
    severity = Column(SQLEnum(AlertSeverity), nullable=False)
    message = Column(Text, nullable=False)
    related_task_id = Column(Integer, nullable=True, index=True)
    related_topic_id = Column(Integer, nullable=True)
    alert_metadata = Column("metadata", JSON, nullable=False, default=dict)
    is_resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    def __repr__(self):
        return f"<Alert(id={self.id}, type='{self.type}', resolved={self.is_resolved})>"


class Adaptation(Base):
    """Immutable audit record of a calendar mutation"""

    __tablename__ = "adaptations"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("study_plans.id"), nullable=False)
    type = Column(SQLEnum(AdaptationType), nullable=False)
    description = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)
    task_id = Column(Integer, nullable=True)
    topic_id = Column(Integer, nullable=True)
    adaptation_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    def __repr__(self):
        return f"<Adaptation(id={self.id}, type='{self.type}', task_id={self.task_id})>"


class RemediationOutcome(Base):
    """Remediation action correlated with the topic score at the time"""

    __tablename__ = "remediation_outcomes"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    action_type = Column(SQLEnum(RemediationActionType), nullable=False)
    task_id = Column(Integer, nullable=True)
    alert_id = Column(Integer, nullable=True)
    baseline_score = Column(Float, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.now, nullable=False)


class ScheduleEntry(Base):
    """Agent scheduler registry entry"""

    __tablename__ = "schedule_entries"

    id = Column(Integer, primary_key=True)
    agent_type = Column(SQLEnum(AgentType), nullable=True)
    sequence_type = Column(SQLEnum(SequenceType), nullable=True)
    schedule_type = Column(SQLEnum(ScheduleType), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    interval_minutes = Column(Integer, nullable=True)
    priority = Column(Integer, nullable=False, default=5)  # 1-10
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    params = Column(JSON, nullable=False, default=dict)
    options = Column(JSON, nullable=False, default=dict)
    next_run = Column(DateTime, nullable=True, index=True)
    last_run = Column(DateTime, nullable=True)
    last_result = Column(JSON, nullable=True)
    in_progress = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    def __repr__(self):
        target = self.sequence_type or self.agent_type
        return f"<ScheduleEntry(id={self.id}, target='{target}', next_run={self.next_run})>"
