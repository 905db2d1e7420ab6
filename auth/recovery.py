"""
auth/recovery.py -- Security-question password recovery.

Flow (every step is one AuthService call, which writes the audit record):

    enroll()          signed-in user picks exactly three catalogue questions;
                      answers are validated per question, normalized
                      (trimmed, lower-cased) and stored bcrypt-hashed.
    questions_for()   returns the questions to ask for an identifier. Unknown
                      accounts and accounts with no enrolled answers get a
                      stable decoy set, so the response never reveals whether
                      the account exists.
    verify_answers()  all answers must match. Wrong answers count toward the
                      same lockout as wrong passwords. Success issues a
                      random reset token; only its sha256 is stored.
    complete()        trades the token (single use, short-lived) for a new
                      password through CredentialStore.reset_password().

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta

from auth.credentials import CredentialStore, verify_password
from auth.lockout import LockoutPolicy
from auth.models import Identity, SecurityAnswer
from auth.outcomes import AuthFailure, FailureKind, PasswordChanged, ResetGrant
from core.clock import Clock, utcnow

logger = logging.getLogger("campusguard.auth.recovery")

SECURITY_QUESTION_COUNT = 3
INCORRECT_ANSWERS = "Security question answers are incorrect."
INVALID_RESET_TOKEN = "Invalid or expired reset token."


# ---------------------------------------------------------------------------
# Question catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecurityQuestion:
    id: str
    question: str
    category: str
    guidance: str
    min_length: int
    max_length: int
    pattern: re.Pattern
    error_message: str

    def public(self) -> dict:
        """What clients see. Validation rules stay server-side."""
        return {"id": self.id, "question": self.question, "category": self.category, "guidance": self.guidance}


_DIGITS = re.compile(r"^\d+$")
_YEAR = re.compile(r"^(19|20)\d{2}$")
_NAME = re.compile(r"^[a-zA-Z\s'-]+$")

QUESTIONS: tuple[SecurityQuestion, ...] = (
    SecurityQuestion(
        "childhood_address_number",
        "What was the house/apartment number of your childhood home? (numbers only)",
        "personal_history",
        'Enter only the numeric part of your address (e.g., if you lived at "123 Main St", enter "123")',
        1, 10, _DIGITS, "Please enter only numbers",
    ),
    SecurityQuestion(
        "first_phone_last_four",
        "What were the last four digits of your first personal phone number?",
        "personal_history",
        "Enter the last 4 digits of the first phone number that was specifically yours",
        4, 4, re.compile(r"^\d{4}$"), "Please enter exactly 4 digits",
    ),
    SecurityQuestion(
        "childhood_friend_first_name",
        "What was the first name of your best friend in elementary school?",
        "personal_history",
        "Enter the first name only, exactly as you remember it",
        2, 30, _NAME, "Please enter only letters, spaces, hyphens, and apostrophes",
    ),
    SecurityQuestion(
        "first_car_license_last_three",
        "What were the last three characters of your first car's license plate?",
        "personal_history",
        "Enter the last 3 characters (letters or numbers) of your first car's license plate",
        # Answers compare case-insensitively, so either case is accepted here.
        3, 3, re.compile(r"^[A-Za-z0-9]{3}$"), "Please enter exactly 3 characters (letters or numbers)",
    ),
    SecurityQuestion(
        "graduation_year",
        "What year did you graduate from high school? (YYYY format)",
        "education",
        "Enter the 4-digit year you graduated from high school",
        4, 4, _YEAR, "Please enter a valid 4-digit year (1900-2099)",
    ),
    SecurityQuestion(
        "first_job_building_number",
        "What was the building/street number of your first job location?",
        "work_history",
        "Enter only the numeric part of the address where you had your first job",
        1, 10, _DIGITS, "Please enter only numbers",
    ),
    SecurityQuestion(
        "childhood_pet_age",
        "How old was your first pet when you got it? (in years, whole numbers only)",
        "personal_history",
        "Enter the age in years as a whole number (e.g., if 6 months old, enter 0)",
        1, 2, re.compile(r"^\d{1,2}$"), "Please enter a number between 0-99",
    ),
    SecurityQuestion(
        "birth_hospital_first_word",
        "What is the first word in the name of the hospital where you were born?",
        "personal_history",
        'Enter only the first word of the hospital name (e.g., for "St. Mary\'s Hospital", enter "St")',
        2, 20, re.compile(r"^[a-zA-Z.']+$"), "Please enter only letters, periods, and apostrophes",
    ),
    SecurityQuestion(
        "elementary_school_mascot",
        "What was your elementary school's mascot or team name?",
        "education",
        "Enter the mascot or team name (e.g., Eagles, Tigers, Lions)",
        3, 30, _NAME, "Please enter only letters, spaces, hyphens, and apostrophes",
    ),
    SecurityQuestion(
        "first_concert_year",
        "What year did you attend your first concert or live music event? (YYYY format)",
        "personal_history",
        "Enter the 4-digit year of your first concert experience",
        4, 4, _YEAR, "Please enter a valid 4-digit year (1900-2099)",
    ),
)

_BY_ID = {q.id: q for q in QUESTIONS}

GUIDELINES = {
    "general": [
        "Choose questions you can answer consistently over time",
        "Avoid answers that might change or that others could easily guess",
        "Your answers are case-insensitive and will be trimmed of extra spaces",
        "Make sure you can remember your exact answers for future password resets",
    ],
    "examples": {
        "good": [
            "Specific numbers (house numbers, phone digits, years)",
            "First names of childhood friends",
            "Specific locations or places from your past",
        ],
        "bad": [
            'Common answers like "blue" for favorite color',
            "Popular books, movies, or songs",
            'Generic pet names like "Fluffy" or "Buddy"',
        ],
    },
}


def get_question(question_id: str) -> SecurityQuestion | None:
    return _BY_ID.get(question_id)


def answer_errors(question_id: str, answer: str) -> list[str]:
    """Format check for one answer, applied to the trimmed value."""
    question = get_question(question_id)
    if question is None:
        return ["Invalid question ID."]
    trimmed = answer.strip()
    if not question.min_length <= len(trimmed) <= question.max_length:
        return [f"Answer must be between {question.min_length} and {question.max_length} characters"]
    if not question.pattern.match(trimmed):
        return [question.error_message]
    return []


def normalize_answer(answer: str) -> str:
    return answer.strip().lower()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# AccountRecovery
# ---------------------------------------------------------------------------


class AccountRecovery:
    def __init__(
        self,
        credentials: CredentialStore,
        lockout: LockoutPolicy,
        *,
        secret_key: str,
        token_ttl: timedelta = timedelta(minutes=10),
        clock: Clock = utcnow,
    ) -> None:
        self._credentials = credentials
        self._store = credentials.store
        self._lockout = lockout
        self._decoy_key = secret_key.encode("utf-8")
        self.token_ttl = token_ttl
        self._clock = clock
        self._dummy_hash = credentials.hash("campusguard-recovery-equalizer")

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def enroll(self, identity: Identity, answers: Sequence[tuple[str, str]]) -> Identity | AuthFailure:
        """Validate and store (question_id, answer) pairs, replacing any earlier set."""
        question_ids = [qid for qid, _ in answers]
        if len(answers) != SECURITY_QUESTION_COUNT:
            return _invalid_enrollment(
                identity, "question_count", f"Exactly {SECURITY_QUESTION_COUNT} security questions are required."
            )
        if len(set(question_ids)) != len(question_ids):
            return _invalid_enrollment(identity, "duplicate_question", "Duplicate questions are not allowed.")

        problems: list[str] = []
        fields: list[str] = []
        for index, (qid, answer) in enumerate(answers):
            errors = answer_errors(qid, answer)
            if errors:
                fields.append(f"questions[{index}]")
                problems.extend(errors)
        if problems:
            return AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="invalid_answer_format",
                identity_id=identity.id,
                message=problems[0],
                detail={"errors": problems, "fields": fields},
            )

        hashed = tuple(
            SecurityAnswer(qid, self._credentials.hash(normalize_answer(answer))) for qid, answer in answers
        )
        self._store.set_security_questions(identity.id, hashed)
        return self._store.get_by_id(identity.id)

    # ------------------------------------------------------------------
    # Reset flow
    # ------------------------------------------------------------------

    def questions_for(self, identifier: str) -> tuple[Identity | None, list[SecurityQuestion]]:
        identity = self._store.get_by_identifier(identifier)
        if identity is not None and identity.security_questions:
            return identity, [_BY_ID[a.question_id] for a in identity.security_questions]
        return identity, self._decoy_questions(identifier)

    def _decoy_questions(self, identifier: str) -> list[SecurityQuestion]:
        """Same identifier, same three questions, on every call."""

        def rank(question: SecurityQuestion) -> str:
            message = f"{identifier.lower()}:{question.id}".encode("utf-8")
            return hmac.new(self._decoy_key, message, hashlib.sha256).hexdigest()

        return sorted(QUESTIONS, key=rank)[:SECURITY_QUESTION_COUNT]

    def verify_answers(self, identifier: str, answers: Mapping[str, str]) -> ResetGrant | AuthFailure:
        """All enrolled answers must match. Issues a reset token on success.

        Unknown, unenrolled and inactive accounts spend the same bcrypt work
        as a real check and fail with the same public message.
        """
        identity = self._store.get_by_identifier(identifier)
        if identity is None or not identity.security_questions or not identity.is_active:
            for _ in range(SECURITY_QUESTION_COUNT):
                verify_password("campusguard", self._dummy_hash)
            if identity is None:
                reason = "unknown_identifier"
            elif not identity.is_active:
                reason = "account_inactive"
            else:
                reason = "no_security_questions"
            return _incorrect(identity.id if identity else None, reason)

        if self._lockout.is_locked(identity):
            return AuthFailure(
                kind=FailureKind.ACCOUNT_LOCKED,
                reason="account_locked",
                identity_id=identity.id,
                detail={"locked_until": identity.locked_until.isoformat()},
            )

        # Every stored answer is checked even after a miss.
        matches = [
            verify_password(normalize_answer(answers.get(enrolled.question_id, "")), enrolled.answer_hash)
            for enrolled in identity.security_questions
        ]
        if not all(matches) or set(answers) != {a.question_id for a in identity.security_questions}:
            updated = self._lockout.record_failure(identity)
            return _incorrect(
                identity.id,
                "invalid_answers",
                failed_attempts=updated.failed_attempts,
                lockout_triggered=self._lockout.is_locked(updated),
            )

        token = secrets.token_urlsafe(32)
        self._store.store_reset_token(identity.id, hash_reset_token(token), self._clock() + self.token_ttl)
        logger.info("Password reset token issued (identity_id=%s)", identity.id)
        return ResetGrant(identity=identity, reset_token=token, expires_in=int(self.token_ttl.total_seconds()))

    def complete(self, reset_token: str, new_password: str) -> PasswordChanged | AuthFailure:
        """Spend the reset token on a new password. A spent token matches no identity afterwards."""
        token_hash = hash_reset_token(reset_token)
        identity = self._store.get_by_reset_token(token_hash)
        if identity is None:
            return AuthFailure(kind=FailureKind.VALIDATION, reason="invalid_reset_token", message=INVALID_RESET_TOKEN)
        if identity.reset_token_expires is None or identity.reset_token_expires <= self._clock():
            return AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="expired_reset_token",
                identity_id=identity.id,
                message=INVALID_RESET_TOKEN,
            )
        if not identity.is_active:
            return AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="account_inactive",
                identity_id=identity.id,
                message=INVALID_RESET_TOKEN,
            )
        return self._credentials.reset_password(identity, new_password, token_hash)


def _incorrect(identity_id: int | None, reason: str, **detail) -> AuthFailure:
    return AuthFailure(
        kind=FailureKind.VALIDATION,
        reason=reason,
        identity_id=identity_id,
        message=INCORRECT_ANSWERS,
        detail=detail,
    )


def _invalid_enrollment(identity: Identity, reason: str, message: str) -> AuthFailure:
    return AuthFailure(
        kind=FailureKind.VALIDATION,
        reason=reason,
        identity_id=identity.id,
        message=message,
        detail={"errors": [message], "fields": ["questions"]},
    )
