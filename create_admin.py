"""Bootstrap the first Director account. Run once: python create_admin.py"""
import os

from db import SessionLocal, engine
from models import Base, User, Profile, UserRole
from auth import hash_password
from services.procedures import next_employee_code

DIRECTOR_EMAIL = os.getenv("DIRECTOR_EMAIL", "director@company.com").strip().lower()
DIRECTOR_PASSWORD = os.getenv("DIRECTOR_PASSWORD", "director123")
DIRECTOR_NAME = os.getenv("DIRECTOR_NAME", "Director")

Base.metadata.create_all(bind=engine)
db = SessionLocal()

try:
    # Check if a director exists
    existing = db.query(User).filter(User.email == DIRECTOR_EMAIL).first()
    if existing:
        print("Director account already exists")
        print(f"Email: {DIRECTOR_EMAIL}")
    else:
        director = User(
            email=DIRECTOR_EMAIL,
            hashed_password=hash_password(DIRECTOR_PASSWORD),
        )
        db.add(director)
        db.flush()

        db.add(Profile(
            id=director.id,
            employee_id=next_employee_code(db),
            full_name=DIRECTOR_NAME,
            role=UserRole.DIRECTOR.value,
            email=DIRECTOR_EMAIL,
            is_temporary_password=True,
            total_tokens=0,
        ))
        db.commit()

        print("Director account created successfully!")
        print(f"Email: {DIRECTOR_EMAIL}")
        print(f"Password: {DIRECTOR_PASSWORD}")
        print("Change password after first login!")

except Exception as e:
    db.rollback()
    print(f"Error: {e}")
    import traceback
    traceback.print_exc()
finally:
    db.close()
