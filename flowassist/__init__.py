"""
FlowAssist - Back Office for Law and Accounting Cabinets
========================================================

Multi-tenant service for:
1. Timesheet entry and matter budgets
2. Invoicing, credit notes and KPI reporting
3. Client documents, internal messaging, to-dos and agenda
"""

__version__ = "1.0.0"
