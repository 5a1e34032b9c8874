"""
Expense Kernel - governance core

Back-office engine of the expense platform:
- Conditional multi-step approval workflows with by-value snapshots
- Role/permission registry with Separation-of-Duties rules
- Self-approval prevention
- Tamper-evident audit trail via hash chain
"""

__version__ = "0.1.0"
