"""
Services package.
"""

from services.worker_gateway import WorkerGateway, DispatchAccepted

__all__ = ["WorkerGateway", "DispatchAccepted"]
