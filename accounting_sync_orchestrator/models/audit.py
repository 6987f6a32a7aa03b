"""
Audit model for control-plane mutations.
"""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field


@dataclass
class AuditRecord:
    """Audit entry for compliance and operator traceability."""

    actor: str
    action: str
    scope: str
    outcome: str
    affected_count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    audit_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    scope_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit record to dictionary."""
        return {
            "audit_id": self.audit_id,
            "actor": self.actor,
            "action": self.action,
            "scope": self.scope,
            "scope_type": self.scope_type,
            "outcome": self.outcome,
            "affected_count": self.affected_count,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }
