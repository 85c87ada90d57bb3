"""
Resolution of storage URIs such as ``private://cryptfield.key``.
"""
from pathlib import Path
from typing import Dict, Optional

from cryptfield.config import settings


def default_scheme_roots() -> Dict[str, Path]:
    return {
        "private": Path(settings.CRYPTFIELD_PRIVATE_PATH),
        "public": Path(settings.CRYPTFIELD_PUBLIC_PATH),
    }


def resolve_uri(uri: str, roots: Optional[Dict[str, Path]] = None) -> Path:
    """
    Map a storage URI onto a filesystem path.

    ``scheme://target`` resolves below the directory registered for the
    scheme; anything without a scheme is treated as a plain path.

    Raises:
        ValueError: If the scheme is unknown or the target escapes its root
    """
    if "://" not in uri:
        return Path(uri)

    scheme, target = uri.split("://", 1)
    roots = roots if roots is not None else default_scheme_roots()
    if scheme not in roots:
        raise ValueError(f"Unknown storage scheme: {scheme}")

    root = roots[scheme].resolve()
    path = (root / target).resolve()
    if path != root and root not in path.parents:
        raise ValueError(f"Storage URI escapes its root: {uri}")
    return path
