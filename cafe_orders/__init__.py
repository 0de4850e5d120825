"""
                Cafe Ordering Backend

Order lifecycle and table guest sessions for a cafe: QR table
invitations, guest ordering, the staff status workflow and polled
notifications.

Version: 1.0.0
"""

__version__ = "1.0.0"
