"""Account directory: user records, full-text search and the account service.

Wire everything with :func:`account_directory.services.create_services`.
"""

__version__ = "0.1.0"
