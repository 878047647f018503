import argparse
from typing import Optional

from sqlmodel import Session, select

from medibook.database import engine
from medibook.models import User, utcnow
from medibook.security import get_password_hash


def reactivate_user(engine, email: str, new_password: Optional[str] = None) -> Optional[User]:
    """Reactivate an account and clear its login lock, optionally resetting the password."""
    email = email.strip().lower()

    with Session(engine) as session:
        statement = select(User).where(User.email == email)
        user = session.exec(statement).first()

        if not user:
            print(f"❌ User {email} not found!")
            return None

        user.is_active = True
        user.failed_login_attempts = 0
        user.locked_until = None
        if new_password:
            user.password_hash = get_password_hash(new_password)
        user.updated_at = utcnow()

        session.add(user)
        session.commit()
        session.refresh(user)
        print(f"✅ Reactivated {email}")
        return user


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reactivate a MediBook account and clear its lockout")
    parser.add_argument("email")
    parser.add_argument("--password", help="set a new password as well")
    args = parser.parse_args()

    reactivate_user(engine, args.email, args.password)
