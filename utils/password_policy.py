"""
Password policy used at registration and change-password time.

validate_password() is pure: it never touches storage and never logs the
candidate. It returns every violated rule at once so the client can show an
itemized list.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

MIN_LENGTH = 12
MAX_LENGTH = 128
MIN_SCORE = 50

# Subset of the usual breached-password lists
COMMON_WEAK_PASSWORDS = frozenset({
    "password", "123456", "password123", "admin", "qwerty", "letmein",
    "welcome", "monkey", "dragon", "123456789", "abc123", "password1",
    "iloveyou", "princess", "admin123", "welcome123", "1234567890",
    "password@123", "qwerty123", "adminadmin",
})

_LOWER_RE = re.compile(r"[a-z]")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile(r"[^a-zA-Z0-9]")
_SYMBOL_RE = re.compile(r"[^a-zA-Z0-9\s]")
_REPEAT_RE = re.compile(r"(.)\1{2,}")
_COMMON_EXACT_RE = re.compile(r"^(?:password|123456|qwerty|admin|letmein|welcome|monkey|dragon)$", re.IGNORECASE)
_KEYBOARD_RE = re.compile(r"(?:qwer|asdf|zxcv|1234|qwerty|asdfgh|zxcvbn)", re.IGNORECASE)
_YEAR_RE = re.compile(r"(?:19|20)\d{2}")

# Letter triples ("def", "stu", "xyz") are common inside ordinary words, so only
# runs of four letters count; digit runs are flagged from three.
SEQUENTIAL_LETTER_RUN = 4
SEQUENTIAL_DIGIT_RUN = 3


@dataclass(frozen=True)
class Violation:
    rule: str
    message: str

    def to_dict(self) -> dict:
        return {"rule": self.rule, "message": self.message}


@dataclass(frozen=True)
class PasswordStrength:
    score: int
    level: str
    feedback: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"score": self.score, "level": self.level, "feedback": list(self.feedback)}


@dataclass(frozen=True)
class PasswordCheck:
    is_valid: bool
    violations: List[Violation]
    strength: PasswordStrength

    @property
    def errors(self) -> List[str]:
        return [v.message for v in self.violations]

    def to_details(self) -> dict:
        return {
            "violations": [v.to_dict() for v in self.violations],
            "strength": self.strength.to_dict(),
        }


def _has_ascending_run(password: str, run: int, alphabet: str) -> bool:
    length = 1
    prev = None
    for ch in password.lower():
        if ch in alphabet and prev is not None and prev in alphabet and ord(ch) - ord(prev) == 1:
            length += 1
            if length >= run:
                return True
        else:
            length = 1
        prev = ch
    return False


def _level_for(score: int) -> str:
    if score >= 90:
        return "strong"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    if score >= 30:
        return "weak"
    return "very-weak"


def check_password_strength(password: str) -> PasswordStrength:
    """Score 0-100 from length and character class coverage."""
    score = 0
    feedback = []

    if len(password) >= 12:
        score += 25
    elif len(password) >= 8:
        score += 15
    else:
        feedback.append("Use at least 12 characters")

    if _LOWER_RE.search(password):
        score += 10
    else:
        feedback.append("Add lowercase letters")
    if _UPPER_RE.search(password):
        score += 10
    else:
        feedback.append("Add uppercase letters")
    if _DIGIT_RE.search(password):
        score += 10
    else:
        feedback.append("Add numbers")
    if _SPECIAL_RE.search(password):
        score += 15
    else:
        feedback.append("Add special characters")

    if len(password) >= 16:
        score += 10
    if _SYMBOL_RE.search(password) and len(password) >= 12:
        score += 10
    if not _REPEAT_RE.search(password):
        score += 10
    else:
        feedback.append("Avoid repeating characters")

    return PasswordStrength(score=min(score, 100), level=_level_for(score), feedback=feedback)


def weak_patterns(password: str) -> List[Violation]:
    """Sequential, keyboard and year patterns found in the password."""
    found = []
    if _has_ascending_run(password, SEQUENTIAL_LETTER_RUN, "abcdefghijklmnopqrstuvwxyz"):
        found.append(Violation("sequential_letters", "Sequential letters detected"))
    if _has_ascending_run(password, SEQUENTIAL_DIGIT_RUN, "0123456789"):
        found.append(Violation("sequential_digits", "Sequential numbers detected"))
    if _KEYBOARD_RE.search(password):
        found.append(Violation("keyboard_pattern", "Keyboard pattern detected"))
    if _YEAR_RE.search(password):
        found.append(Violation("year_pattern", "Year pattern detected"))
    return found


def validate_password(password: str, min_score: int = MIN_SCORE) -> PasswordCheck:
    """
    Check a candidate password against every rule.

    A password passing the character rules is still rejected when its
    strength score is below min_score.
    """
    violations = []
    if len(password) < MIN_LENGTH:
        violations.append(Violation("min_length", f"Password must be at least {MIN_LENGTH} characters long"))
    if len(password) > MAX_LENGTH:
        violations.append(Violation("max_length", f"Password must be less than {MAX_LENGTH} characters"))
    if not _LOWER_RE.search(password):
        violations.append(Violation("lowercase", "Password must contain at least one lowercase letter"))
    if not _UPPER_RE.search(password):
        violations.append(Violation("uppercase", "Password must contain at least one uppercase letter"))
    if not _DIGIT_RE.search(password):
        violations.append(Violation("digit", "Password must contain at least one number"))
    if not _SPECIAL_RE.search(password):
        violations.append(Violation("special", "Password must contain at least one special character"))
    if _REPEAT_RE.search(password):
        violations.append(Violation(
            "repeated_characters", "Password must not contain more than 2 consecutive identical characters"
        ))
    if password.lower() in COMMON_WEAK_PASSWORDS or _COMMON_EXACT_RE.match(password):
        violations.append(Violation("common_password", "Password is too common and easily guessable"))

    violations.extend(weak_patterns(password))

    strength = check_password_strength(password)
    if strength.score < min_score:
        violations.append(Violation("too_weak", "Password is too weak - please choose a stronger password"))

    return PasswordCheck(is_valid=not violations, violations=violations, strength=strength)
