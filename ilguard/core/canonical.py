"""
ILGuard: Canonical JSON Encoding (RFC 8785, JCS)

This is the ONLY canonicalization permitted in ILGuard.
Worker results, attestation votes, settlement records and journal
entries are all signed and hashed over these bytes.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib

import jcs


def canonicalize(obj: dict) -> bytes:
    """
    Encode a dict to RFC 8785 canonical JSON bytes.

    Output is deterministic regardless of key insertion order.
    Integers above 2**53 are NOT safe in JCS; callers encode amounts
    as decimal strings before canonicalizing.
    """
    return jcs.canonicalize(obj)


def canonical_hash(obj: dict) -> str:
    """
    SHA-256 of the RFC 8785 canonical form.

    Returns:
        Lowercase hex-encoded SHA-256 digest (64 characters).
    """
    return hashlib.sha256(canonicalize(obj)).hexdigest()
