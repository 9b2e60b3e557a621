"""
SQLAlchemy ORM models for league night coordination.

Uniqueness invariants (one instance per league and date, one active check-in
per player, one active partnership per player, one pending score per match,
one live match per court) are enforced here by the store, not by callers.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    JSON,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from league_night.database.db import Base


class InstanceStatus(str, enum.Enum):
    """League night instance status enum."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PartnershipRequestStatus(str, enum.Enum):
    """Partnership request status enum."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MatchStatus(str, enum.Enum):
    """Match status enum."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ScoreStatus(str, enum.Enum):
    """Match score status enum."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"


class LeagueRole(str, enum.Enum):
    """League membership role enum."""

    MEMBER = "member"
    ORGANIZER = "organizer"
    ADMIN = "admin"


LIVE_MATCH_STATUSES = (MatchStatus.QUEUED.value, MatchStatus.IN_PROGRESS.value)


class Profile(Base):
    """Player profiles (owned by the profile service, read here)."""

    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)  # Same id as the auth user
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    skill_level = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def full_name(self) -> str:
        """First and last name joined."""
        return f"{self.first_name} {self.last_name}".strip()


class League(Base):
    """League groups (owned by the league service, read here)."""

    __tablename__ = "leagues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    days = relationship("LeagueDay", back_populates="league", cascade="all, delete-orphan")
    members = relationship("LeagueMember", back_populates="league", cascade="all, delete-orphan")


class LeagueDay(Base):
    """Recurring weekly slot template for a league."""

    __tablename__ = "league_days"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # ISO weekday: 1 = Monday ... 7 = Sunday
    start_time = Column(String(5), nullable=False)  # "HH:MM" in league local time
    total_courts = Column(Integer, nullable=False, default=1)
    court_labels = Column(JSON, nullable=True)

    # Relationships
    league = relationship("League", back_populates="days")

    __table_args__ = (Index("idx_league_days_league", "league_id"),)


class LeagueMember(Base):
    """League membership with role (owned by the membership service, read here)."""

    __tablename__ = "league_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    role = Column(String(20), default=LeagueRole.MEMBER.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    league = relationship("League", back_populates="members")

    __table_args__ = (
        UniqueConstraint("league_id", "user_id"),
        Index("idx_league_members_user", "user_id"),
    )


class LeagueNightInstance(Base):
    """One concrete calendar occurrence of a league's recurring slot."""

    __tablename__ = "league_night_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    league_day_id = Column(Integer, ForeignKey("league_days.id"), nullable=True)
    date = Column(Date, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    courts_available = Column(Integer, nullable=False, default=1)
    court_labels = Column(JSON, nullable=True)
    status = Column(String(20), default=InstanceStatus.SCHEDULED.value, nullable=False)
    auto_assignment_enabled = Column(Boolean, default=True, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("league_id", "date", name="uq_league_night_instances_league_date"),
        Index("idx_league_night_instances_status", "status"),
    )


class Checkin(Base):
    """A player's presence at an instance. Soft-deleted, never removed."""

    __tablename__ = "league_night_checkins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("league_night_instances.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    checked_in_at = Column(DateTime(timezone=True), nullable=False)
    checked_out_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    profile = relationship("Profile", lazy="joined")

    __table_args__ = (
        Index(
            "uq_checkins_active_instance_user",
            "instance_id",
            "user_id",
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = true"),
        ),
        Index("idx_checkins_instance_checked_in", "instance_id", "checked_in_at"),
    )


class PartnershipRequest(Base):
    """Directed request from one checked-in player to another."""

    __tablename__ = "partnership_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("league_night_instances.id"), nullable=False)
    requester_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    requested_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status = Column(String(20), default=PartnershipRequestStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    requester = relationship("Profile", foreign_keys=[requester_id], lazy="joined")
    requested = relationship("Profile", foreign_keys=[requested_id], lazy="joined")

    __table_args__ = (
        CheckConstraint("requester_id <> requested_id", name="ck_partnership_requests_distinct"),
        Index(
            "uq_partnership_requests_pending_pair",
            "instance_id",
            "requester_id",
            "requested_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_partnership_requests_instance_status", "instance_id", "status"),
    )


class ConfirmedPartnership(Base):
    """Two players who will play together for the night."""

    __tablename__ = "confirmed_partnerships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("league_night_instances.id"), nullable=False)
    player1_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    player2_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("partnership_requests.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=False)
    dissolved_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    player1 = relationship("Profile", foreign_keys=[player1_id], lazy="joined")
    player2 = relationship("Profile", foreign_keys=[player2_id], lazy="joined")
    members = relationship("PartnershipMember", back_populates="partnership")

    @property
    def player_ids(self):
        """Both player ids, requester first."""
        return [self.player1_id, self.player2_id]

    __table_args__ = (
        CheckConstraint("player1_id <> player2_id", name="ck_confirmed_partnerships_distinct"),
        Index("idx_confirmed_partnerships_instance_active", "instance_id", "is_active"),
    )


class PartnershipMember(Base):
    """One row per player per partnership; carries the one-active-partnership index."""

    __tablename__ = "partnership_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    partnership_id = Column(Integer, ForeignKey("confirmed_partnerships.id"), nullable=False)
    instance_id = Column(Integer, ForeignKey("league_night_instances.id"), nullable=False)
    player_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    partnership = relationship("ConfirmedPartnership", back_populates="members")

    __table_args__ = (
        Index(
            "uq_partnership_members_active_player",
            "instance_id",
            "player_id",
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = true"),
        ),
    )


class Match(Base):
    """A contest between two confirmed partnerships on one court."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("league_night_instances.id"), nullable=False)
    partnership1_id = Column(Integer, ForeignKey("confirmed_partnerships.id"), nullable=False)
    partnership2_id = Column(Integer, ForeignKey("confirmed_partnerships.id"), nullable=False)
    court_number = Column(Integer, nullable=False)
    status = Column(String(20), default=MatchStatus.QUEUED.value, nullable=False)
    team1_player1_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    team1_player2_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    team2_player1_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    team2_player2_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    team1_score = Column(Integer, nullable=True)  # Final, set on confirmation
    team2_score = Column(Integer, nullable=True)
    winner = Column(Integer, nullable=True)  # 1 = team1, 2 = team2
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    scores = relationship("MatchScore", back_populates="match", order_by="MatchScore.id")

    @property
    def team1_player_ids(self):
        """Team 1 player ids."""
        return [self.team1_player1_id, self.team1_player2_id]

    @property
    def team2_player_ids(self):
        """Team 2 player ids."""
        return [self.team2_player1_id, self.team2_player2_id]

    @property
    def player_ids(self):
        """All four player ids, team 1 first."""
        return self.team1_player_ids + self.team2_player_ids

    def team_of(self, user_id: int):
        """Return 1 or 2 for the user's team, or None if the user is not playing."""
        if user_id in self.team1_player_ids:
            return 1
        if user_id in self.team2_player_ids:
            return 2
        return None

    __table_args__ = (
        CheckConstraint("partnership1_id <> partnership2_id", name="ck_matches_distinct_partnerships"),
        Index(
            "uq_matches_live_court",
            "instance_id",
            "court_number",
            unique=True,
            postgresql_where=text("status IN ('queued', 'in_progress')"),
            sqlite_where=text("status IN ('queued', 'in_progress')"),
        ),
        Index("idx_matches_instance_status", "instance_id", "status"),
        Index("idx_matches_partnership1", "partnership1_id"),
        Index("idx_matches_partnership2", "partnership2_id"),
    )


class MatchScore(Base):
    """A submitted game score awaiting, or having received, the other team's answer."""

    __tablename__ = "match_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    team1_score = Column(Integer, nullable=False)
    team2_score = Column(Integer, nullable=False)
    submitted_by_team = Column(Integer, nullable=False)  # 1 or 2
    submitted_by_user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status = Column(String(20), default=ScoreStatus.PENDING.value, nullable=False)
    responded_by_user_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    match = relationship("Match", back_populates="scores")

    __table_args__ = (
        CheckConstraint("submitted_by_team IN (1, 2)", name="ck_match_scores_team"),
        Index(
            "uq_match_scores_pending_match",
            "match_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class PlayerLeagueStats(Base):
    """Running per-league totals, updated when a score is confirmed."""

    __tablename__ = "player_league_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    games_played = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    games_lost = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)
    average_points = Column(Float, default=0.0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "league_id"),
        Index("idx_player_league_stats_league", "league_id"),
    )


class PushSubscription(Base):
    """A device endpoint registered for push notifications."""

    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    endpoint = Column(Text, nullable=False)
    p256dh_key = Column(String, nullable=False)
    auth_key = Column(String, nullable=False)
    device_info = Column(JSON, nullable=True)
    user_agent = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),
        Index("idx_push_subscriptions_user_active", "user_id", "is_active"),
    )
