#!/usr/bin/env python3
"""
Script to create an admin user and print an access token for it
Usage: python create_admin.py
"""

import sys
import os

# Add the backend directory to the Python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from database.connection import get_db, create_tables
from models.user import User, UserRole
from services.auth import create_access_token


def create_admin_user():
    """Create an admin user interactively"""
    print("🔧 KTR Delivery Admin User Creation")
    print("=" * 40)

    db = next(get_db())

    try:
        create_tables()

        email = input("Email: ").strip().lower()
        existing_user = db.query(User).filter(User.email == email).first()
        if existing_user:
            print(f"❌ User with email {email} already exists with role {existing_user.role.value}")
            if existing_user.role == UserRole.ADMIN:
                print(f"🔑 Token: {create_access_token(existing_user.id, existing_user.role)}")
            return

        name = input("Name: ").strip()
        if not name:
            print("❌ Name is required!")
            return
        phone = input("Phone (optional): ").strip() or None

        user = User(email=email, name=name, phone=phone, role=UserRole.ADMIN, is_active=True)
        db.add(user)
        db.commit()
        db.refresh(user)

        print("✅ Admin user created successfully!")
        print(f"📧 Email: {user.email}")
        print(f"🔑 Token: {create_access_token(user.id, user.role)}")

    except Exception as e:
        db.rollback()
        print(f"❌ Error creating admin user: {str(e)}")
    finally:
        db.close()


if __name__ == "__main__":
    create_admin_user()
