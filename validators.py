"""
Validation helpers for customer data

Every check returns a bool. Empty or wrongly typed input is a rejection,
never an exception, so callers can chain checks freely.
"""
import re
from datetime import date, datetime
from typing import Optional

MAX_AGE_YEARS = 110
PASSWORD_PATTERN = re.compile(r"(?=.*[A-Z])(?=.*[0-9])(?=.*[!@#$%^&*]).{6,20}")

VALID_DDDS = frozenset([
    "11", "12", "13", "14", "15", "16", "17", "18", "19",  # SP
    "21", "22", "24",  # RJ
    "27", "28",  # ES
    "31", "32", "33", "34", "35", "37", "38",  # MG
    "41", "42", "43", "44", "45", "46",  # PR
    "47", "48", "49",  # SC
    "51", "53", "54", "55",  # RS
    "61",  # DF
    "62", "64",  # GO
    "63",  # TO
    "65", "66",  # MT
    "67",  # MS
    "68",  # AC
    "69",  # RO
    "71", "73", "74", "75", "77",  # BA
    "79",  # SE
    "81", "87",  # PE
    "82",  # AL
    "83",  # PB
    "84",  # RN
    "85", "88",  # CE
    "86", "89",  # PI
    "91", "93", "94",  # PA
    "92", "97",  # AM
    "95",  # RR
    "96",  # AP
    "98", "99",  # MA
])


def clean_digits(value) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r"\D", "", value)


def _all_same(digits: str) -> bool:
    return len(set(digits)) == 1


def cpf_check_digit(base: str) -> int:
    """Weighted-sum-mod-11 digit for a 9 or 10 digit CPF prefix."""
    weight = len(base) + 1
    total = sum(int(d) * (weight - i) for i, d in enumerate(base))
    rest = total % 11
    return 0 if rest < 2 else 11 - rest


def validate_cpf(cpf) -> bool:
    digits = clean_digits(cpf)
    if len(digits) != 11:
        return False
    # 111.111.111-11 and friends
    if _all_same(digits):
        return False
    if cpf_check_digit(digits[:9]) != int(digits[9]):
        return False
    return cpf_check_digit(digits[:10]) == int(digits[10])


def validate_phone(tel) -> bool:
    """Mobile number without area code: exactly 9 digits, not all identical."""
    digits = clean_digits(tel)
    if len(digits) != 9:
        return False
    return not _all_same(digits)


def validate_ddd(ddd) -> bool:
    digits = clean_digits(ddd)
    if len(digits) != 2:
        return False
    return digits in VALID_DDDS


def validate_full_phone(ddd, tel) -> bool:
    return validate_ddd(ddd) and validate_phone(tel)


def _parse_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip()).date()
    except ValueError:
        return None


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 on a non-leap target year
        return day.replace(year=day.year - years, day=28)


def validate_birth_date(nasc, today: Optional[date] = None) -> bool:
    """
    Accepts ISO 8601 strings (YYYY-MM-DD, optionally with a time part) or
    date/datetime objects. The date may be today but not in the future, and
    at most MAX_AGE_YEARS years back. Comparison is done on whole days.
    """
    birth = _parse_date(nasc)
    if birth is None:
        return False
    today = today or date.today()
    limit = _years_before(today, MAX_AGE_YEARS)
    return limit <= birth <= today


def validate_password(senha) -> bool:
    """6-20 chars with at least one uppercase letter, one digit and one of !@#$%^&*."""
    if not isinstance(senha, str) or senha == "":
        return False
    if not 6 <= len(senha) <= 20:
        return False
    return PASSWORD_PATTERN.fullmatch(senha) is not None


def validate_password_confirmation(csenha, senha) -> bool:
    if not isinstance(csenha, str) or not isinstance(senha, str):
        return False
    return csenha == senha


def validate_name(nome) -> bool:
    if not isinstance(nome, str):
        return False
    return 3 <= len(nome.strip()) <= 50
