"""
tenantdb.core
=============

Ambient services shared by the data-access components: settings, logging,
sanitization and the error taxonomy. Nothing in here opens a connection.
"""
