"""Mint a development bearer token for a user id."""
import sys, time
from jose import jwt
from ehrcore import config

def make_token(user_id: str, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    claims = {"sub": user_id, "aud": config.JWT_AUDIENCE, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)

if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("Usage: python tools/make_token.py <user_id> [ttl_seconds]"); raise SystemExit(2)
    if config.is_production():
        print("Refusing to mint tokens in production"); raise SystemExit(1)
    print(make_token(sys.argv[1], int(sys.argv[2]) if len(sys.argv) == 3 else 3600))
