"""
Workflow Resolver Module

Selects the template that governs a new request: the first active template
(ascending priority) whose condition holds, else the tenant default.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import logging

from .errors import NoApplicableTemplate
from .predicates import evaluate
from .templates import TemplateStore, WorkflowTemplate


logger = logging.getLogger("approval_engine.resolver")


def request_attributes(request_type: str, request_category: Optional[str],
                       amount: Optional[Decimal],
                       context_payload: Dict[str, Any]) -> Dict[str, Any]:
    """Attribute view that predicates are evaluated against"""
    return {
        'request_type': request_type,
        'request_category': request_category,
        'amount': amount,
        'context': context_payload,
    }


class WorkflowResolver:

    def __init__(self, templates: TemplateStore,
                 clock: Optional[Callable[[], datetime]] = None):
        self.templates = templates
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(self, tenant_id: str, request_type: str, request_category: Optional[str],
                amount: Optional[Decimal], context_payload: Dict[str, Any]) -> WorkflowTemplate:
        """
        Return the template to apply.

        Raises:
            NoApplicableTemplate: nothing matched and no default is flagged
        """
        now = self.clock()
        attributes = request_attributes(request_type, request_category, amount, context_payload)

        for template in self.templates.candidates(tenant_id, request_type, request_category, now):
            if template.condition is None or evaluate(template.condition, attributes):
                logger.debug("Resolved %s/%s to template %s", tenant_id, request_type, template.id)
                return template

        default = self.templates.default_template(tenant_id, request_type, now)
        if default:
            logger.debug("Falling back to default template %s for %s", default.id, request_type)
            return default

        raise NoApplicableTemplate(tenant_id, request_type, request_category)
