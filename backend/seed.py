from __future__ import annotations

import os
from getpass import getpass

from relayum import create_app
from relayum.auth.routes import create_user
from relayum.extensions import db
from relayum.models import User, UserRole


def main() -> None:
    app = create_app()

    with app.app_context():
        db.create_all()

        username = os.getenv("ADMIN_USERNAME", "admin")
        password = os.getenv("ADMIN_PASSWORD")
        if not password:
            password = getpass("Admin password: ")

        user = User.query.filter_by(username=username).one_or_none()
        created = user is None
        if user is None:
            user = create_user(username, password, role=UserRole.ADMIN)
        else:
            user.set_password(password)
            user.role = UserRole.ADMIN
            user.is_active = True
        db.session.commit()

        print(f"Admin user {'created' if created else 'updated'}: {username}")


if __name__ == "__main__":
    main()
