from .ownership import OwnershipRecord, OwnershipMovement

__all__ = [
    'OwnershipRecord', 'OwnershipMovement',
]
