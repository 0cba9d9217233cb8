# This module initializes the bootstrap administrator on startup.
import logging

from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .database import SessionLocal

logger = logging.getLogger(__name__)


def create_or_update_admin() -> None:
    """
    Creates the ADMIN_ACCOUNT administrator if missing, or re-activates it and
    syncs its password to ADMIN_PASSWORD. Skipped when either is unset.
    Imports are done LOCALLY inside the function to prevent circular dependencies.
    """
    from . import crud, models
    from .security import get_password_hash, verify_password

    settings = get_settings()
    if not settings.admin_account or not settings.admin_password:
        logger.warning("ADMIN_ACCOUNT or ADMIN_PASSWORD not set. Skipping admin user setup.")
        return

    db = SessionLocal()
    try:
        user = crud.get_user_by_account(db, settings.admin_account)
        if user:
            changed = False
            if user.role != models.UserRole.admin or user.status != models.UserStatus.active:
                user.role = models.UserRole.admin
                user.status = models.UserStatus.active
                changed = True
            # Only update the hash if the current password doesn't match
            if not verify_password(settings.admin_password, user.password_hash):
                user.password_hash = get_password_hash(settings.admin_password)
                changed = True
            if changed:
                db.commit()
                crud.invalidate_user_cache(user)
                logger.info("Admin user has been updated on startup to match the environment.")
        else:
            db.add(models.User(
                account=settings.admin_account,
                name="Administrator",
                password_hash=get_password_hash(settings.admin_password),
                phone=settings.admin_phone,
                role=models.UserRole.admin,
                status=models.UserStatus.active,
            ))
            db.commit()
            logger.info("Admin user has been created on startup.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"CRITICAL: Error during admin user initialization: {e}")
    finally:
        db.close()
