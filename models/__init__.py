from models.structure import Structure
from models.distribution import Assignment, Distribution, FilterSnapshot, compute_partner_counts
from models.audit import AuditEntry
