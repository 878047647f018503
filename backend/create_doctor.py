import argparse

from sqlmodel import Session, select

from medibook.database import engine, init_db
from medibook.models import User, utcnow
from medibook.security import get_password_hash


def create_doctor(
    engine,
    email: str,
    password: str,
    name: str,
    phone: str,
    specialization: str = "General Practice",
    hospital: str = "MediBook Clinic",
    city: str = "Dallas",
    consultation_fee: float = 50.0,
) -> User:
    """Create a doctor account, or promote an existing account to doctor."""
    email = email.strip().lower()

    with Session(engine) as session:
        statement = select(User).where(User.email == email)
        user = session.exec(statement).first()

        if user:
            print(f"User {email} already exists. Updating to doctor role...")
            user.role = "doctor"
        else:
            user = User(
                email=email,
                name=name,
                phone=phone,
                password_hash=get_password_hash(password),
                role="doctor",
                is_verified=True,
            )

        user.specialization = user.specialization or specialization
        user.hospital = user.hospital or hospital
        user.city = user.city or city
        user.experience = user.experience or 0
        user.education = user.education or "MD"
        if user.consultation_fee is None:
            user.consultation_fee = consultation_fee
        user.updated_at = utcnow()

        session.add(user)
        session.commit()
        session.refresh(user)
        print(f"✅ Doctor account ready: {email} (id {user.id})")
        return user


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create or promote a MediBook doctor account")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("name")
    parser.add_argument("phone")
    parser.add_argument("--specialization", default="General Practice")
    parser.add_argument("--hospital", default="MediBook Clinic")
    parser.add_argument("--city", default="Dallas")
    parser.add_argument("--fee", type=float, default=50.0)
    args = parser.parse_args()

    init_db()
    create_doctor(
        engine,
        email=args.email,
        password=args.password,
        name=args.name,
        phone=args.phone,
        specialization=args.specialization,
        hospital=args.hospital,
        city=args.city,
        consultation_fee=args.fee,
    )
