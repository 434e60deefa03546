"""
Document Control module.

Controlled documents move Draft -> In Approval -> Released -> Obsolete:
- A document number is a lineage of versions (vA, vB.. or v1, v2..)
- At most one version of a number is Released at any time
- Releasing a version obsoletes its immediate predecessor
- Every lifecycle action is recorded to the append-only audit trail
"""
