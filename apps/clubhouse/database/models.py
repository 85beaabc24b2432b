"""
SQLAlchemy ORM models for the club registration and payment system.

Embedded document structures (player seasons, team tournaments, payment
refunds, guardians, preferences, provider credentials) are JSON columns,
stored as JSONB on PostgreSQL.
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
    Numeric,
    ForeignKey,
    Index,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from clubhouse.database.db import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


class ParentRole(str, enum.Enum):
    """Account role enum."""

    USER = "user"
    ADMIN = "admin"
    COACH = "coach"


class PaymentStatus(str, enum.Enum):
    """Registration payment status (player seasons, team tournaments, registrations)."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, enum.Enum):
    """Status of a persisted Payment row."""

    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    """Payment type enum."""

    TRYOUT = "tryout"
    TRAINING = "training"
    TOURNAMENT = "tournament"
    GENERAL = "general"


class PaymentSystem(str, enum.Enum):
    """Supported card processors."""

    SQUARE = "square"
    CLOVER = "clover"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class LevelOfCompetition(str, enum.Enum):
    """Team competition level."""

    GOLD = "Gold"
    SILVER = "Silver"


DEFAULT_COMMUNICATION_PREFERENCES = {
    "emailNotifications": True,
    "newsUpdates": True,
    "offersPromotions": True,
    "marketingEmails": True,
    "transactionalEmails": True,
    "broadcastEmails": True,
}


class Parent(Base):
    """Parent / guardian accounts. Coaches and admins are parents with a role."""

    __tablename__ = "parents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)  # stored lower-case
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(JSONType, nullable=True)
    relationship = Column(String, nullable=True)
    is_coach = Column(Boolean, default=False, nullable=False)
    aau_number = Column(String, nullable=True)
    role = Column(String, default=ParentRole.USER.value, nullable=False)
    register_method = Column(String, default="self", nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verification_token = Column(String, nullable=True)
    email_verification_expires = Column(DateTime(timezone=True), nullable=True)
    reset_password_token = Column(String, nullable=True)
    reset_password_expires = Column(DateTime(timezone=True), nullable=True)
    additional_guardians = Column(JSONType, nullable=False, default=list)
    communication_preferences = Column(
        JSONType, nullable=False, default=lambda: dict(DEFAULT_COMMUNICATION_PREFERENCES)
    )
    square_customer_id = Column(String, nullable=True)
    clover_customer_id = Column(String, nullable=True)
    stripe_customer_id = Column(String, nullable=True)
    paypal_customer_id = Column(String, nullable=True)
    registration_complete = Column(Boolean, default=False, nullable=False)
    payment_complete = Column(Boolean, default=False, nullable=False)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    avatar = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_parents_role", "role"),
    )


class Player(Base):
    """Player profiles, owned by exactly one parent."""

    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(Integer, ForeignKey("parents.id"), nullable=False)
    full_name = Column(String, nullable=False)
    gender = Column(String, nullable=False)
    dob = Column(Date, nullable=False)
    school_name = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    health_concerns = Column(Text, nullable=True)
    aau_number = Column(String, nullable=True)
    # Mirror of the latest seasons[] entry
    season = Column(String, nullable=True)
    registration_year = Column(Integer, nullable=True)
    payment_status = Column(String, default=PaymentStatus.PENDING.value, nullable=False)
    payment_complete = Column(Boolean, default=False, nullable=False)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    registration_complete = Column(Boolean, default=False, nullable=False)
    seasons = Column(JSONType, nullable=False, default=list)
    avatar = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_players_parent", "parent_id"),
    )


class Team(Base):
    """Tournament teams, coached by one or more parents."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    grade = Column(String, nullable=False)
    sex = Column(String, nullable=False)
    level_of_competition = Column(String, default=LevelOfCompetition.SILVER.value, nullable=False)
    registration_year = Column(Integer, nullable=True)
    tournament = Column(String, nullable=True)
    coach_ids = Column(JSONType, nullable=False, default=list)
    tournaments = Column(JSONType, nullable=False, default=list)
    payment_complete = Column(Boolean, default=False, nullable=False)
    payment_status = Column(String, default=PaymentStatus.PENDING.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_teams_name_grade_sex", "name", "grade", "sex"),
    )


class Registration(Base):
    """One row per (player, program) or per (team, tournament) enrolment."""

    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(Integer, ForeignKey("players.id"), nullable=True)
    parent_id = Column(Integer, ForeignKey("parents.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    season = Column(String, nullable=True)
    year = Column(Integer, nullable=False)
    tryout_id = Column(String, nullable=True)
    tournament = Column(String, nullable=True)
    level_of_competition = Column(String, nullable=True)
    payment_status = Column(String, default=PaymentStatus.PENDING.value, nullable=False)
    payment_complete = Column(Boolean, default=False, nullable=False)
    payment_id = Column(String, nullable=True)  # processor id
    payment_record_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    amount_paid = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), default="USD", nullable=False)
    payment_method = Column(String, nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String, nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    registration_complete = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_registrations_parent", "parent_id"),
        Index("idx_registrations_player", "player_id"),
        Index("idx_registrations_team", "team_id"),
    )


class Payment(Base):
    """Record of one charge attempt. Only refunds and webhooks mutate it afterwards."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(Integer, ForeignKey("parents.id"), nullable=False)
    player_ids = Column(JSONType, nullable=False, default=list)
    team_ids = Column(JSONType, nullable=False, default=list)
    payment_id = Column(String, nullable=False, unique=True)  # processor id
    payment_system = Column(String, nullable=False)
    configuration_id = Column(Integer, ForeignKey("payment_configurations.id"), nullable=True)
    order_id = Column(String, nullable=True)
    location_id = Column(String, nullable=True)
    merchant_id = Column(String, nullable=True)
    buyer_email = Column(String, nullable=False)
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String, nullable=True)
    card_exp_month = Column(Integer, nullable=True)
    card_exp_year = Column(Integer, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(String, default=PaymentRecordStatus.COMPLETED.value, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    receipt_url = Column(String, nullable=True)
    payment_type = Column(String, default=PaymentType.GENERAL.value, nullable=False)
    note = Column(String, nullable=True)
    players = Column(JSONType, nullable=False, default=list)
    tournament_name = Column(String, nullable=True)
    year = Column(Integer, nullable=True)
    payment_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    refunds = Column(JSONType, nullable=False, default=list)
    refunded_amount = Column(Numeric(10, 2), default=0, nullable=False)
    refund_status = Column(String, default="none", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_payments_parent", "parent_id"),
        Index("idx_payments_system", "payment_system"),
    )


class PaymentConfiguration(Base):
    """Card processor configuration. One active row per provider type."""

    __tablename__ = "payment_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_system = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    test_mode = Column(Boolean, default=False, nullable=False)
    square_config = Column(JSONType, nullable=False, default=dict)
    clover_config = Column(JSONType, nullable=False, default=dict)
    stripe_config = Column(JSONType, nullable=False, default=dict)
    paypal_config = Column(JSONType, nullable=False, default=dict)
    settings = Column(JSONType, nullable=False, default=dict)
    webhook_urls = Column(JSONType, nullable=False, default=dict)
    created_by = Column(Integer, ForeignKey("parents.id"), nullable=True)
    last_modified_by = Column(Integer, ForeignKey("parents.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_payment_configurations_active", "payment_system", "is_active"),
    )


class EmailTemplate(Base):
    """Named email templates with [entity.field] placeholders."""

    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False, unique=True)
    subject = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String, default="active", nullable=False)
    include_signature = Column(Boolean, default=False, nullable=False)
    signature_config = Column(JSONType, nullable=False, default=dict)
    category = Column(String, default="system", nullable=False)
    attachments = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# Uniqueness backing the duplicate-registration checks. Expression indexes are
# declared outside the classes so they can reference mapped columns.
Index(
    "uq_players_parent_identity",
    Player.parent_id,
    func.lower(Player.full_name),
    Player.dob,
    Player.gender,
    unique=True,
)
Index(
    "uq_registrations_player_program",
    Registration.player_id,
    func.lower(Registration.season),
    Registration.year,
    func.coalesce(Registration.tryout_id, ""),
    Registration.parent_id,
    unique=True,
    postgresql_where=Registration.player_id.isnot(None),
    sqlite_where=Registration.player_id.isnot(None),
)
Index(
    "uq_registrations_team_tournament",
    Registration.parent_id,
    Registration.team_id,
    Registration.tournament,
    Registration.year,
    unique=True,
    postgresql_where=Registration.team_id.isnot(None),
    sqlite_where=Registration.team_id.isnot(None),
)
