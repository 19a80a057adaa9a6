from provisioning.models.company import Company
from provisioning.models.import_audit import ImportAuditEntry
from provisioning.models.member import Member

__all__ = [ "Company", "ImportAuditEntry", "Member" ]
