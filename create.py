# create.py
"""Bootstrap: create the tables and seed the assignment statuses.

    python create.py

Re-running is safe; existing statuses are kept and re-ordered.
"""
from taskmarket import create_app
from taskmarket.extensions import db
from taskmarket.services.assignment_status import seed_statuses


def main():
    app = create_app()
    with app.app_context():
        db.create_all()
        statuses = seed_statuses()
        print("Tables ready. Statuses: " + ", ".join(s.name for s in statuses))


if __name__ == "__main__":
    main()
