from rxopps.models.pharmacy import Pharmacy, Patient  # noqa: F401
from rxopps.models.dispensing import DispensingRecord  # noqa: F401
from rxopps.models.trigger import Trigger, TriggerPayerOverride  # noqa: F401
from rxopps.models.opportunity import Opportunity  # noqa: F401
from rxopps.models.discovery import PendingOpportunityType, ApprovalLog  # noqa: F401
from rxopps.models.scan_log import ScanLog  # noqa: F401
from rxopps.models.reference import CmsFormularyDrug, FormularyItem, TherapeuticCategory  # noqa: F401
from rxopps.models.audit import AuditLog  # noqa: F401
