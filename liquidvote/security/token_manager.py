# liquidvote/security/token_manager.py
from datetime import timedelta
from flask_jwt_extended import create_access_token, decode_token, get_jwt, get_jwt_identity
from flask import current_app, Flask

# JWT sessions for wallets whose signature was verified upstream. The identity
# is the lower-cased wallet address; the role rides along as a claim.


class TokenManager:
    def __init__(self, app: Flask = None):
        if app:
            self.init_app(app)

    def init_app(self, app: Flask):
        app.config.setdefault("JWT_SECRET_KEY", "change_this_secret_key")
        app.config.setdefault("JWT_ACCESS_TOKEN_EXPIRES", timedelta(hours=24))

    def generate_token(self, wallet_address: str, role: str = "member", expires_in: int = None) -> str:
        expires_delta = timedelta(seconds=expires_in) if expires_in else None
        return create_access_token(
            identity=wallet_address.lower(),
            additional_claims={"role": role},
            expires_delta=expires_delta,
        )

    def validate_token(self, token: str):
        # Return the wallet address if the token is valid, else None.
        try:
            decoded = decode_token(token, allow_expired=False)
            return decoded.get("sub")
        except Exception as e:
            current_app.logger.warning(f"Token validation failed: {str(e)}")
            return None

    def current_wallet(self):
        try:
            return get_jwt_identity()
        except RuntimeError:
            return None

    def current_role(self):
        try:
            return get_jwt().get("role", "member")
        except RuntimeError:
            return None
