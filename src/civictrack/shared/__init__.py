"""
Shared Kernel Module
====================

Generic infrastructure used by every bounded context: structured logging,
request middleware and HTTP error mapping.

DO NOT add issue lifecycle or SLA business logic to the shared kernel.
"""
