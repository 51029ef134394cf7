"""
External collaborators: attendance source and disbursement relay.
"""

# Package initialization for services module
from .base import IAttendanceVerifier, IDisbursementClient
from .token_cache import TokenCache
from .zoom import ZoomAttendanceVerifier
from .disbursement import HttpDisbursementClient, validate_release_params
from .mock import MockAttendanceVerifier, MockDisbursementClient

__all__ = [
    'IAttendanceVerifier',
    'IDisbursementClient',
    'TokenCache',
    'ZoomAttendanceVerifier',
    'HttpDisbursementClient',
    'validate_release_params',
    'MockAttendanceVerifier',
    'MockDisbursementClient'
]
