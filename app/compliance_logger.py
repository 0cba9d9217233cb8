import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from app import database, models


class ComplianceLogger:
	"""Audit trail writer: every event goes to the audit_logs table and the structured 'audit' logger."""

	def __init__(self):
		self.logger = logging.getLogger('compliance')
		self.audit = structlog.get_logger('audit')

	def log_event(
		self,
		action: str,
		category: str,
		user_id: Optional[uuid.UUID] = None,
		username: Optional[str] = None,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[Any] = None,
		ip_address: Optional[str] = None,
	) -> None:
		"""Record one audit event in its own session; failures are logged, never raised."""
		try:
			action_enum = models.AuditAction(str(action).upper())
		except ValueError:
			action_enum = models.AuditAction.READ

		self.audit.info(
			details or action_enum.value,
			action=action_enum.value,
			category=category,
			severity=severity,
			user_id=str(user_id) if user_id else None,
			resource_type=resource_type,
			resource_id=str(resource_id) if resource_id is not None else None,
		)

		db = database.SessionLocal()
		try:
			db_log = models.AuditLog(
				user_id=user_id,
				username=username or (str(user_id) if user_id else 'System'),
				action=action_enum,
				category=(category or 'GENERAL').upper(),
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=str(resource_id) if resource_id is not None else None,
				details=details,
				ip_address=ip_address,
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error(f"Failed to save audit log to DB: {e}")
		finally:
			db.close()

	def log_access_denied(self, user_id: Optional[uuid.UUID], resource_type: str, resource_id: Any, reason: str) -> None:
		self.log_event(
			action='ACCESS_DENIED',
			category='SECURITY',
			user_id=user_id,
			details=reason,
			severity='WARNING',
			resource_type=resource_type,
			resource_id=resource_id,
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
