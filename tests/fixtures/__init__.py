"""
Shared test doubles and constants for the authorization engine test suite.
"""

from datetime import datetime, timezone

START_TIME = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

GROUP_ROLE_MAPPING = {
    'Nectaria-Brokers': 'broker',
    'Nectaria-SeniorBrokers': 'senior-broker',
    'Nectaria-Underwriters': 'underwriter',
    'Nectaria-CustomerSupport': 'customer-support',
}
