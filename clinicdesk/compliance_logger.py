from typing import Optional, Any

import structlog


class ComplianceLogger:
	"""Unified compliance logger. Audit events are emitted as structured records on the
	'audit' logger; persisting them is the job of the log pipeline, not of this service."""

	def __init__(self, institution_id: str = 'CLINICDESK', geo_region: str = 'KW'):
		self.institution_id = institution_id
		self.geo_region = geo_region
		self.logger = structlog.get_logger('audit')

	def log_event(
		self,
		user_id: Optional[str],
		action: str,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[str] = None,
		**extra: Any
	) -> None:
		"""Emit one audit event. Extra keyword arguments are attached as event fields."""
		event = dict(
			institution_id=self.institution_id,
			geo_region=self.geo_region,
			user_id=user_id or 'System',
			action=(action or 'UNKNOWN').upper(),
			category=category or 'GENERAL',
			resource_type=resource_type,
			resource_id=resource_id,
			details=details,
			**extra
		)
		if severity.upper() == 'ERROR':
			self.logger.error('audit_event', **event)
		elif severity.upper() == 'WARNING':
			self.logger.warning('audit_event', **event)
		else:
			self.logger.info('audit_event', **event)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
