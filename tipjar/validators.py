"""
Tipjar Validators

This module provides custom validation functions for the Tipjar application:
- Lightning address validation for payout destinations
- Page username validation with security and UX considerations
- Tip amount and supporter name validation

All validators raise Django ValidationError on invalid input.
"""

from django.core.exceptions import ValidationError
import re


LIGHTNING_ADDRESS_RE = re.compile(r'^[A-Za-z0-9._+-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*$')

SUPPORTER_NAME_MAX_LENGTH = 100

# Words that would be misleading as page usernames, or that collide with
# top-level URL paths served by the app.
RESERVED_USERNAMES = {
    'admin', 'administrator', 'superuser', 'root', 'system', 'staff', 'moderator', 'support', 'help',
    'contact', 'security', 'abuse', 'billing', 'payments', 'payment', 'invoice', 'checkout', 'pay',
    'wallet', 'balance', 'tips', 'tip', 'lightning',
    'signup', 'register', 'login', 'logout', 'auth', 'oauth', 'verify', 'settings', 'accounts', 'account',
    'api', 'status', 'health', 'webhook', 'webhooks', 'dashboard', 'static', 'media',
    'causes', 'cause', 'campaigns', 'campaign', 'crowdfunding', 'pages', 'page',
    'user', 'users', 'profile', 'anonymous', 'none', 'null', 'undefined',
}


def validate_lightning_address(address):
    """
    Validate the shape of a Lightning address (``name@domain``).

    Only the shape is checked here. Whether the address actually resolves is
    up to the payment processor, which rejects unknown destinations when the
    charge is created.

    Raises:
        ValidationError: If the address is empty or not of the form name@domain
    """
    if not address or not isinstance(address, str) or not LIGHTNING_ADDRESS_RE.match(address):
        raise ValidationError("Invalid Lightning address.")


def validate_username(value):
    """
    Validate tipping page usernames.

    Rules enforced:
    - 3 to 30 characters of letters, digits, '_' or '-'
    - not a reserved word, and not a reserved word joined with '-' or '_'

    Raises:
        ValidationError: If username violates any validation rules
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Invalid username.")

    v_lower = value.strip().lower()

    if not re.match(r'^[a-z0-9_-]{3,30}$', v_lower):
        raise ValidationError("Usernames must be 3-30 characters of letters, numbers, '-' or '_'.")

    if v_lower in RESERVED_USERNAMES:
        raise ValidationError("This username is unavailable.")

    for token in re.split(r'[-_]', v_lower):
        if token in RESERVED_USERNAMES:
            raise ValidationError("This username is unavailable.")


def validate_tip_amount(amount, minimum=1):
    """
    Validate a tip amount in sats against the page minimum.

    Booleans are rejected even though they are ints in Python.

    Raises:
        ValidationError: If amount is not a positive integer at or above minimum
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Tip amount must be a whole number of sats.")
    if amount <= 0:
        raise ValidationError("Tip amount must be greater than zero.")
    if amount < minimum:
        raise ValidationError(f"Minimum tip is {minimum} sats.")


def validate_supporter_name(name):
    """Raise ValidationError unless name is a non-blank string of at most 100 characters."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Please enter your name.")
    if len(name.strip()) > SUPPORTER_NAME_MAX_LENGTH:
        raise ValidationError(f"Name too long (max {SUPPORTER_NAME_MAX_LENGTH} characters).")
