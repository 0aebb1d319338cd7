"""
Audit workflow services.

Each function takes an AsyncSession and an explicit Identity, performs the
permission and lock checks, stages its writes and leaves the commit to the
caller so one request maps to one transaction.
"""
