from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    user_id: str
    email: str | None = None
    is_admin: bool = False

    def require_admin(self) -> None:
        if not self.is_admin:
            raise PermissionError("admin capability required")


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None
