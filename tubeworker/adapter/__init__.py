"""
Queue adapters.
"""

from tubeworker.adapter.base import Adapter
from tubeworker.adapter.beanstalk import BeanstalkAdapter

__all__ = [
    "Adapter",
    "BeanstalkAdapter",
]
