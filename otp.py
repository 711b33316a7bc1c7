"""
otp.py – One-time-password engine.

Pure computation: given a secret and the algorithm parameters of an
authenticator, produce the current code together with its validity window
(TOTP, RFC 6238) or the code for the stored counter (HOTP, RFC 4226).

HMAC and dynamic truncation are performed by pyotp; this module owns
everything around it:

  - secret normalisation and decoding (base32 text or raw key bytes),
  - parameter validation (digits, period, counter, algorithm, type),
  - the time -> counter derivation and the validity window,
  - otpauth:// URI import (enrollment) and export (QR payload).

Nothing here touches storage.  HOTP counters are never incremented by the
engine; the caller persists the increment (storage.AuthenticatorStore).
"""

import base64
import binascii
import hashlib
import logging
import time
from typing import Optional, Union

import pyotp

from errors import ValidationError
from models import Algorithm, Authenticator, AuthenticatorType, GeneratedCode

logger = logging.getLogger("OtpAuthenticator")

MIN_DIGITS = 1
MAX_DIGITS = 10

DEFAULT_DIGITS = 6
DEFAULT_PERIOD = 30

_DIGESTS = {
    Algorithm.SHA1: hashlib.sha1,
    Algorithm.SHA256: hashlib.sha256,
    Algorithm.SHA512: hashlib.sha512,
}


# ---------------------------------------------------------------------------
# Secret handling
# ---------------------------------------------------------------------------

def normalize_secret(secret: Union[str, bytes]) -> str:
    """
    Return the canonical base32 form of *secret*.

    Text input may contain spaces and hyphens, lower-case letters and '='
    padding (as printed by most services); raw bytes are treated as key
    material and base32-encoded.  The result is upper case without padding
    and is the identity key of an Authenticator.

    Raises ValidationError when the secret is empty or not valid base32.
    """
    if isinstance(secret, (bytes, bytearray)):
        if not secret:
            raise ValidationError("Secret cannot be empty.", field="secret")
        return base64.b32encode(bytes(secret)).decode("ascii").rstrip("=")

    if not isinstance(secret, str):
        raise ValidationError("Secret must be text or bytes.", field="secret")

    text = "".join(secret.split()).replace("-", "").upper().rstrip("=")
    if not text:
        raise ValidationError("Secret cannot be empty.", field="secret")

    # Decode once to make sure the text really is base32.
    decode_secret(text)
    return text


def decode_secret(secret: str) -> bytes:
    """Decode a normalised base32 secret to its raw key bytes."""
    padded = secret + "=" * (-len(secret) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Secret is not valid base32: {exc}", field="secret") from exc
    if not key:
        raise ValidationError("Secret decodes to an empty key.", field="secret")
    return key


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_parameters(
    algorithm,
    digits: int,
    type_=AuthenticatorType.TOTP,
    period: Optional[int] = None,
    counter: Optional[int] = None,
):
    """
    Check the generation parameters and return them as
    (Algorithm, digits, AuthenticatorType).

    Raises ValidationError for an unknown algorithm or type, digits outside
    [1, 10], a non-positive period (TOTP) or a negative counter (HOTP).
    """
    if isinstance(algorithm, str) and not isinstance(algorithm, Algorithm):
        algorithm = algorithm.upper()
    if isinstance(type_, str) and not isinstance(type_, AuthenticatorType):
        type_ = type_.lower()
    try:
        algorithm = Algorithm(algorithm)
    except ValueError:
        raise ValidationError(f"Unsupported algorithm: {algorithm!r}", field="algorithm") from None
    try:
        type_ = AuthenticatorType(type_)
    except ValueError:
        raise ValidationError(f"Unsupported authenticator type: {type_!r}", field="type") from None

    if isinstance(digits, bool) or not isinstance(digits, int):
        raise ValidationError("Digits must be an integer.", field="digits")
    if not MIN_DIGITS <= digits <= MAX_DIGITS:
        raise ValidationError(
            f"Digits must be between {MIN_DIGITS} and {MAX_DIGITS}.", field="digits"
        )

    if type_ == AuthenticatorType.TOTP:
        if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
            raise ValidationError("Period must be a positive number of seconds.", field="period")
    else:
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
            raise ValidationError("Counter must be a non-negative integer.", field="counter")

    return algorithm, digits, type_


def validate_authenticator(auth: Authenticator) -> None:
    """Raise ValidationError if *auth* cannot generate codes."""
    if not auth.issuer or not auth.issuer.strip():
        raise ValidationError("Issuer cannot be empty.", field="issuer")
    decode_secret(auth.secret)
    validate_parameters(auth.algorithm, auth.digits, auth.type, auth.period, auth.counter)


# ---------------------------------------------------------------------------
# Code generation
# ---------------------------------------------------------------------------

def _hotp(secret: str, algorithm: Algorithm, digits: int) -> pyotp.HOTP:
    return pyotp.HOTP(secret, digits=digits, digest=_DIGESTS[algorithm])


def time_counter(unix_time: float, period: int) -> int:
    """Return the RFC 6238 time step, floor(unix_time / period)."""
    return int(unix_time // period)


def compute_code(
    secret: Union[str, bytes],
    algorithm=Algorithm.SHA1,
    digits: int = DEFAULT_DIGITS,
    type_=AuthenticatorType.TOTP,
    period: Optional[int] = DEFAULT_PERIOD,
    counter: Optional[int] = None,
    now: Optional[float] = None,
) -> GeneratedCode:
    """
    Compute a one-time code.

    Parameters
    ----------
    secret : str or bytes
        Base32 text or raw key bytes.
    algorithm : Algorithm or str
        'SHA1', 'SHA256' or 'SHA512'.
    digits : int
        Code length, 1..10.  Leading zeros are preserved.
    type_ : AuthenticatorType or str
        'totp' or 'hotp'.
    period : int
        Seconds per time step (TOTP only).
    counter : int
        Moving factor (HOTP only).
    now : float, optional
        Unix time to compute the TOTP code for; defaults to the wall clock.

    Returns
    -------
    GeneratedCode
        For TOTP, valid_from = step * period and valid_until = valid_from +
        period.  For HOTP, counter is the counter the code was generated at.

    Raises ValidationError on any invalid input.
    """
    algorithm, digits, type_ = validate_parameters(algorithm, digits, type_, period, counter)
    normalized = normalize_secret(secret)
    generator = _hotp(normalized, algorithm, digits)

    if type_ == AuthenticatorType.HOTP:
        return GeneratedCode(value=generator.at(counter), counter=counter)

    if now is None:
        now = time.time()
    if now < 0:
        raise ValidationError("Time cannot be before the Unix epoch.", field="now")

    step = time_counter(now, period)
    valid_from = step * period
    return GeneratedCode(
        value=generator.at(step),
        valid_from=valid_from,
        valid_until=valid_from + period,
    )


def compute_for(auth: Authenticator, now: Optional[float] = None) -> GeneratedCode:
    """Compute the current code of *auth* (HOTP at its stored counter)."""
    return compute_code(
        auth.secret,
        algorithm=auth.algorithm,
        digits=auth.digits,
        type_=auth.type,
        period=auth.period,
        counter=auth.counter,
        now=now,
    )


# ---------------------------------------------------------------------------
# otpauth:// URIs
# ---------------------------------------------------------------------------

_DIGEST_NAMES = {digest().name: algorithm for algorithm, digest in _DIGESTS.items()}


def parse_uri(uri: str) -> Authenticator:
    """
    Build an Authenticator from an otpauth:// enrollment URI.

    The returned record has ranking 0 and no icon; the repository assigns
    its position when it is added.

    Raises ValidationError if the URI is malformed or its parameters are
    not supported.
    """
    try:
        parsed = pyotp.parse_uri(uri)
    except (ValueError, binascii.Error) as exc:
        raise ValidationError(f"Invalid otpauth URI: {exc}", field="uri") from exc

    digest_name = parsed.digest().name
    algorithm = _DIGEST_NAMES.get(digest_name)
    if algorithm is None:
        raise ValidationError(f"Unsupported algorithm: {digest_name}", field="algorithm")

    if isinstance(parsed, pyotp.TOTP):
        auth = Authenticator(
            secret=normalize_secret(parsed.secret),
            issuer=parsed.issuer or parsed.name or "",
            username=parsed.name if parsed.issuer else "",
            type=AuthenticatorType.TOTP,
            algorithm=algorithm,
            digits=parsed.digits,
            period=int(parsed.interval),
        )
    else:
        auth = Authenticator(
            secret=normalize_secret(parsed.secret),
            issuer=parsed.issuer or parsed.name or "",
            username=parsed.name if parsed.issuer else "",
            type=AuthenticatorType.HOTP,
            algorithm=algorithm,
            digits=parsed.digits,
            counter=parsed.initial_count,
        )

    validate_authenticator(auth)
    logger.debug("Parsed otpauth URI for %s", auth.issuer)
    return auth


def provisioning_uri(auth: Authenticator) -> str:
    """Return the otpauth:// URI that enrolls *auth* in another app."""
    validate_authenticator(auth)
    digest = _DIGESTS[Algorithm(auth.algorithm)]
    name = auth.username or auth.issuer
    if auth.is_time_based:
        return pyotp.TOTP(
            auth.secret, digits=auth.digits, digest=digest, interval=auth.period
        ).provisioning_uri(name=name, issuer_name=auth.issuer)
    return pyotp.HOTP(
        auth.secret, digits=auth.digits, digest=digest
    ).provisioning_uri(name=name, initial_count=auth.counter, issuer_name=auth.issuer)
