"""
export.py – Excel backup of the vault.

write_excel_backup() writes every authenticator to an "Authenticators"
worksheet, one row per record, including the otpauth:// URI that re-enrolls
it in any authenticator app.  When the vault holds a master key the
workbook bytes are encrypted with it (Fernet) and the file gets an ".enc"
suffix, so secrets never reach the disk in clear unless the vault itself is
unencrypted.
"""

import io
import logging
import os
from typing import Iterable, Optional

from openpyxl import Workbook

import otp
from errors import PersistenceError
from models import Authenticator

logger = logging.getLogger("OtpAuthenticator")

HEADER = ["Issuer", "Username", "Type", "Algorithm", "Digits", "Period", "Counter", "URI"]


def build_workbook(authenticators: Iterable[Authenticator], column_widths: Optional[dict] = None) -> Workbook:
    """Return a workbook with a header row and one row per authenticator."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Authenticators"
    ws.append(HEADER)
    for auth in authenticators:
        ws.append([
            auth.issuer,
            auth.username,
            auth.type.value,
            auth.algorithm.value,
            auth.digits,
            auth.period if auth.is_time_based else None,
            None if auth.is_time_based else auth.counter,
            otp.provisioning_uri(auth),
        ])

    for col, width in (column_widths or {}).items():
        try:
            ws.column_dimensions[col].width = int(width)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid Excel column width %r for %s", width, col)
    return wb


def write_excel_backup(authenticators: Iterable[Authenticator], out_path: str, config, crypto) -> str:
    """
    Write the backup to *out_path* and return the path actually written.

    If a master key is held the workbook is encrypted and ".enc" is
    appended to the path.  Raises PersistenceError on I/O failure.
    """
    wb = build_workbook(authenticators, config.get("excel_column_widths"))
    buffer = io.BytesIO()
    wb.save(buffer)
    data = buffer.getvalue()

    if crypto.is_unlocked:
        data = crypto.encrypt_bytes(data)
        if not out_path.endswith(".enc"):
            out_path += ".enc"

    try:
        directory = os.path.dirname(out_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(out_path, "wb") as fh:
            fh.write(data)
    except OSError as exc:
        logger.exception("Failed to write Excel backup %s", out_path)
        raise PersistenceError(f"Could not write {out_path}") from exc

    logger.info("Exported Excel backup to %s", out_path)
    return out_path
