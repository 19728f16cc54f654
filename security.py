"""
Request hardening helpers: magic-byte sniffing for uploads, input validation,
random tokens and webhook HMAC checks.
"""

import hmac
import hashlib
import re
import secrets

# File type validation using magic bytes
FILE_SIGNATURES = {
    'image/jpeg': [b'\xFF\xD8\xFF'],
    'image/png': [b'\x89PNG\r\n\x1a\n'],
    'image/gif': [b'GIF87a', b'GIF89a'],
    'image/webp': [b'RIFF'],  # RIFF header, WEBP marker checked at offset 8
}

SAFE_EXTENSIONS = ('jpg', 'jpeg', 'png', 'webp', 'gif')

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

INVALID_TYPE_ERROR = 'Invalid file type. Only JPEG, PNG, GIF, and WebP images are allowed.'


def validate_file_type(data):
    """
    Detect the image type from the first bytes of an upload.

    Args:
        data: the raw file bytes (only the first 12 are inspected)

    Returns:
        tuple: (valid, detected_type, error)
    """
    header = bytes(data[:12]) if data else b''
    for mime_type, signatures in FILE_SIGNATURES.items():
        for signature in signatures:
            if not header.startswith(signature):
                continue
            if mime_type == 'image/webp':
                if header[8:12] == b'WEBP':
                    return True, mime_type, None
            else:
                return True, mime_type, None
    return False, None, INVALID_TYPE_ERROR


def safe_extension(filename):
    ext = filename.rsplit('.', 1)[-1].lower() if filename and '.' in filename else ''
    return ext if ext in SAFE_EXTENSIONS else 'jpg'


def sanitize_input(text):
    """Trim, drop angle brackets and cap free text at 1000 characters."""
    return re.sub(r'[<>]', '', (text or '').strip())[:1000]


def is_valid_email(email):
    return bool(email) and len(email) <= 254 and bool(EMAIL_RE.match(email))


def is_valid_uuid(value):
    return bool(value) and bool(UUID_RE.match(value))


def generate_secure_token(length=32):
    return secrets.token_hex(length)


def verify_hmac_signature(payload, signature, secret):
    """Constant-time check of a hex HMAC-SHA256 signature over the raw request body."""
    if not signature or not secret:
        return False
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    expected = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
    try:
        return hmac.compare_digest(signature.strip().encode('ascii'), expected.encode('ascii'))
    except UnicodeEncodeError:
        return False
