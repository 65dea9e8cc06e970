"""
Database Initialization Script
Run this script to create all database tables and seed initial data
"""
import os
import sys
from datetime import time

from app import create_app
from models import db, User, Device, Compartment, Schedule
from utils.credentials import hash_secret

SAMPLE_SERIAL = 'PM-0001-TEST'
SAMPLE_SECRET = 'test-device-secret-123'


def seed_sample_device(owner, timezone):
    """Add a three-compartment device with a morning and an evening schedule"""
    device = Device(
        name='Kitchen dispenser',
        serial=SAMPLE_SERIAL,
        secret_hash=hash_secret(SAMPLE_SECRET),
        owner=owner,
        timezone=timezone
    )
    db.session.add(device)
    db.session.flush()

    for idx, angle in enumerate((0, 90, 180), start=1):
        db.session.add(Compartment(
            device_id=device.id,
            idx=idx,
            title=f'Compartment {idx}',
            servo_angle_deg=angle
        ))
    db.session.flush()

    first = device.compartments.filter_by(idx=1).first()
    db.session.add(Schedule(compartment_id=first.id, time_of_day=time(8, 0), days_of_week=0b1111111))
    db.session.add(Schedule(compartment_id=first.id, time_of_day=time(20, 0), days_of_week=0b0011111,
                            window_minutes=15, enable_buzzer=False))
    return device


def init_database():
    """Initialize database with tables and seed data"""

    app = create_app()

    with app.app_context():
        # Drop all tables (use with caution in production!)
        print("Dropping existing tables...")
        db.drop_all()

        # Create all tables
        print("Creating database tables...")
        db.create_all()

        # Create default admin user
        print("Creating default admin user...")
        admin = User(
            username=app.config['ADMIN_USERNAME'],
            email='admin@dispenserhub.local'
        )
        admin.set_password(app.config['ADMIN_PASSWORD'])
        db.session.add(admin)

        # Create sample data for testing (optional)
        if os.getenv('FLASK_ENV', 'development') == 'development':
            print("Adding sample device for development...")
            seed_sample_device(admin, app.config['DEFAULT_DEVICE_TIMEZONE'])

        # Commit all changes
        db.session.commit()

        print("\n" + "="*50)
        print("Database initialized successfully!")
        print("="*50)
        print("\nAdmin credentials:")
        print(f"  Username: {app.config['ADMIN_USERNAME']}")
        print(f"  Password: {app.config['ADMIN_PASSWORD']}")
        if Device.query.filter_by(serial=SAMPLE_SERIAL).first():
            print("\nSample device:")
            print(f"  Serial: {SAMPLE_SERIAL}")
            print(f"  Secret: {SAMPLE_SECRET}")
        print("\nIMPORTANT: Change the default password after first login!")
        print("="*50 + "\n")


if __name__ == '__main__':
    confirm = input("This will delete all existing data. Continue? (yes/no): ")
    if confirm.lower() == 'yes':
        init_database()
    else:
        print("Database initialization cancelled.")
        sys.exit(0)
