"""
Bearer token identity resolution.

Tokens are HS256 JWTs issued by the identity provider with the user id
in "sub". The token only says who the caller is; roles, provider record
and patient record always come from the Directory.
"""

from typing import Any, Dict, Optional

from jose import JWTError, jwt

from . import config
from .directory import Directory
from .errors import InvalidCredential
from .models import Identity, RequestMetadata


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token. Raises InvalidCredential."""
    try:
        return jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            audience=config.JWT_AUDIENCE,
        )
    except JWTError as e:
        raise InvalidCredential() from e


def resolve_identity(
    token: Optional[str],
    directory: Directory,
    request: Optional[RequestMetadata] = None
) -> Identity:
    """Turn a bearer token into the per-request Identity."""
    if not token:
        raise InvalidCredential("Missing authorization header")

    claims = decode_token(token)
    user_id = claims.get("sub")
    if not user_id:
        raise InvalidCredential()

    patient = directory.get_patient_by_user_id(user_id)
    return Identity(
        user_id=user_id,
        roles=tuple(directory.get_roles_for_user(user_id)),
        provider_id=directory.get_provider_id(user_id),
        patient_id=patient["id"] if patient else None,
        request=request or RequestMetadata(),
    )
