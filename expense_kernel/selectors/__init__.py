"""Read-only selectors."""

from expense_kernel.selectors.report_selector import ReportSelector
from expense_kernel.selectors.user_selector import UserSelector

__all__ = ["ReportSelector", "UserSelector"]
