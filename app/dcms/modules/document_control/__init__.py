"""
Document Control module: approval/issuance workflow and controlled distribution.

- Documents move pending -> approved -> issued (or declined) one revision row at a time
- Issued rows are immutable; resubmitting creates a new revision row of the same doc number
- Every view/print hands out a unique control-copy number and is recorded to the audit ledger
"""
