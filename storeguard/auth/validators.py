"""
Credential and input validators.

Pure functions with no I/O and no shared state:
- Email shape check
- Password strength rules (all rules reported together)
- Text sanitization (defense in depth, not an HTML sanitizer)
- Credit card Luhn check and network detection
- Phone number shape check
"""

import re
from typing import Dict


EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

# Password strength requirements
PASSWORD_MIN_LENGTH = 8
PASSWORD_SYMBOLS = r'[!@#$%^&*(),.?":{}|<>]'

CARD_MIN_DIGITS = 13
CARD_MAX_DIGITS = 19

PHONE_PATTERN = re.compile(r'^\+?[1-9]\d{0,15}$', re.ASCII)
PHONE_SEPARATORS = re.compile(r'[\s\-()]')

_ANGLE_BRACKETS = re.compile(r'[<>]')
_JS_SCHEME = re.compile(r'javascript:', re.IGNORECASE)
_EVENT_HANDLER = re.compile(r'on\w+=', re.IGNORECASE)


def validate_email(email: str) -> bool:
    """Check that `email` has a basic local@domain.tld shape."""
    return bool(EMAIL_PATTERN.fullmatch(email))


def validate_password(password: str) -> Dict:
    """
    Validate password against strength requirements.

    Every rule is evaluated, so all failures are reported together.

    Args:
        password: Password to validate

    Returns:
        Dict with 'valid' bool, ordered 'errors' list and 'score'
    """
    errors = []

    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r'[A-Z]', password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r'[a-z]', password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r'\d', password):
        errors.append("Password must contain at least one number")
    if not re.search(PASSWORD_SYMBOLS, password):
        errors.append("Password must contain at least one special character")

    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'score': calculate_password_score(password),
    }


def calculate_password_score(password: str) -> int:
    """
    Calculate a password strength score (0-100) for a strength meter.

    Args:
        password: Password to score

    Returns:
        Score from 0 (weak) to 100 (strong)
    """
    score = min(len(password) * 2, 30)

    for pattern in (r'[a-z]', r'[A-Z]', r'\d', PASSWORD_SYMBOLS):
        if re.search(pattern, password):
            score += 10

    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10

    # Penalties for common patterns
    if re.search(r'(.)\1{2,}', password):
        score -= 10
    if re.search(r'(012|123|234|345|456|567|678|789)', password):
        score -= 10
    if re.search(r'(abc|bcd|cde|def|efg)', password.lower()):
        score -= 10

    return max(0, min(100, score))


def sanitize_text(text: str) -> str:
    """
    Strip markup fragments from free text.

    Removes angle brackets, `javascript:` schemes and inline event
    handler prefixes such as `onclick=`, then trims whitespace.
    """
    text = _ANGLE_BRACKETS.sub('', text)
    text = _JS_SCHEME.sub('', text)
    text = _EVENT_HANDLER.sub('', text)
    return text.strip()


def luhn_check(number: str) -> bool:
    """
    Luhn checksum over a string of digits.

    Every second digit from the right is doubled (minus 9 when above 9);
    the number is valid when the digit sum is a multiple of 10.
    """
    total = 0
    for position, char in enumerate(reversed(number)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def get_card_type(number: str) -> str:
    """Detect the card network from its leading digits."""
    if re.match(r'^4', number):
        return 'Visa'
    if re.match(r'^5[1-5]', number):
        return 'Mastercard'
    if re.match(r'^3[47]', number):
        return 'American Express'
    return 'Unknown'


def validate_credit_card(card_number: str) -> Dict:
    """
    Validate a card number.

    Args:
        card_number: Card number, whitespace allowed

    Returns:
        Dict with 'valid' (13-19 digits and Luhn) and 'type'; the type is
        reported even when the number is invalid
    """
    clean = re.sub(r'\s', '', card_number)
    well_formed = (
        clean.isascii()
        and clean.isdigit()
        and CARD_MIN_DIGITS <= len(clean) <= CARD_MAX_DIGITS
    )
    return {
        'valid': well_formed and luhn_check(clean),
        'type': get_card_type(clean),
    }


def validate_phone(phone: str) -> bool:
    """Check a phone number after removing spaces, dashes and parentheses."""
    return bool(PHONE_PATTERN.fullmatch(PHONE_SEPARATORS.sub('', phone)))
