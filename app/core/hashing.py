from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# bcrypt only looks at the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


class Hasher:
    @staticmethod
    def _clip(password: str) -> str:
        """Cut to 72 bytes without leaving half of a multi-byte UTF-8 character."""
        encoded = password.encode("utf-8")
        if len(encoded) <= BCRYPT_MAX_BYTES:
            return password
        return encoded[:BCRYPT_MAX_BYTES].decode("utf-8", errors="ignore")

    @staticmethod
    def hash_password(password: str) -> str:
        return pwd_context.hash(Hasher._clip(password))

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        if not hashed_password:
            return False
        return pwd_context.verify(Hasher._clip(plain_password), hashed_password)
