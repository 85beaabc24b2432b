"""
Pydantic models for API request validation.

Bodies arrive in camelCase (``sourceId``, ``cardDetails``); fields are
snake_case in Python and either spelling is accepted.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Address(CamelModel):
    street: str = ""
    street2: Optional[str] = None
    city: str = ""
    state: str = ""
    zip: str = ""


class Guardian(CamelModel):
    full_name: str
    relationship: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[Address] = None
    is_coach: bool = False
    aau_number: Optional[str] = None


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class RegisterRequest(CamelModel):
    """Create a parent account."""

    email: EmailStr
    password: str
    full_name: str
    phone: Optional[str] = None
    address: Optional[Address] = None
    relationship: Optional[str] = None
    is_coach: bool = False
    aau_number: Optional[str] = None
    additional_guardians: List[Guardian] = Field(default_factory=list)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class EmailRequest(CamelModel):
    """Body with just an email (password reset request, resend verification)."""

    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str
    new_password: str


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str


class TempAccountRequest(CamelModel):
    email: EmailStr
    password: str


class VerifyEmailRequest(CamelModel):
    """Verify a parent's email, or a pending temp account when ``email`` is given."""

    token: str
    email: Optional[EmailStr] = None


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class PlayerDetails(CamelModel):
    full_name: str = Field(min_length=1)
    gender: str
    dob: date
    school_name: Optional[str] = None
    grade: Optional[str] = None
    health_concerns: Optional[str] = None
    aau_number: Optional[str] = None


class CampPlayer(PlayerDetails):
    season: str = Field(min_length=1)
    year: int = Field(ge=2020, le=2100)
    tryout_id: Optional[str] = None


class BasketballCampRequest(CamelModel):
    """Combined parent + players registration."""

    email: EmailStr
    password: Optional[str] = None
    full_name: str
    phone: Optional[str] = None
    address: Optional[Address] = None
    relationship: Optional[str] = None
    is_coach: bool = False
    aau_number: Optional[str] = None
    additional_guardians: List[Guardian] = Field(default_factory=list)
    agree_to_terms: bool = False
    players: List[CampPlayer] = Field(default_factory=list)


class PlayerRegisterRequest(PlayerDetails):
    registration_year: Optional[int] = None
    season: Optional[str] = None
    tryout_id: Optional[str] = None
    skip_season_registration: bool = False


class TeamDetails(CamelModel):
    team_name: str = Field(min_length=1)
    grade: str
    sex: str = Field(pattern="^(Male|Female)$")
    level_of_competition: Optional[str] = Field(default=None, pattern="^(Gold|Silver)$")


class TournamentTeamRequest(TeamDetails):
    tournament: str = Field(min_length=1)
    year: int


class TournamentTeamsRequest(CamelModel):
    tournament: str = Field(min_length=1)
    year: int
    teams: List[TeamDetails] = Field(default_factory=list)


class TeamTournamentRequest(CamelModel):
    """Add an existing team to a tournament."""

    team_id: int
    tournament: str = Field(min_length=1)
    year: int
    level_of_competition: Optional[str] = Field(default=None, pattern="^(Gold|Silver)$")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentPlayer(CamelModel):
    player_id: int
    season: Optional[str] = None
    year: Optional[int] = None
    tryout_id: Optional[str] = None


class PlayerPaymentRequest(CamelModel):
    """
    Body of the player payment flows.

    ``amount`` is in minor units. Shape checks beyond types happen in the
    orchestrator so every problem is reported per field.
    """

    token: Optional[str] = None
    source_id: Optional[str] = None
    amount: Optional[int] = None
    email: Optional[EmailStr] = None
    players: List[PaymentPlayer] = Field(default_factory=list)
    card_details: Dict[str, Any] = Field(default_factory=dict)
    payment_system: Optional[str] = None


class TournamentPaymentRequest(CamelModel):
    token: Optional[str] = None
    source_id: Optional[str] = None
    amount: Optional[int] = None
    email: Optional[EmailStr] = None
    team_id: Optional[int] = None
    team_ids: List[int] = Field(default_factory=list)
    tournament: Optional[str] = None
    year: Optional[int] = None
    level_of_competition: Optional[str] = None
    card_details: Dict[str, Any] = Field(default_factory=dict)
    payment_system: Optional[str] = None


class RefundRequest(CamelModel):
    payment_id: Union[int, str]
    amount: int = Field(gt=0)
    reason: str = "Requested by customer"


class SwitchSystemRequest(CamelModel):
    payment_system: str


class PaymentConfigurationRequest(CamelModel):
    """Create/update body; every field is optional on update."""

    payment_system: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    test_mode: Optional[bool] = None
    square_config: Optional[Dict[str, Any]] = None
    clover_config: Optional[Dict[str, Any]] = None
    stripe_config: Optional[Dict[str, Any]] = None
    paypal_config: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    webhook_urls: Optional[Dict[str, Any]] = None
