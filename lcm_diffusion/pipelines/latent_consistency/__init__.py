from .loop import DenoisingLoop
from .session import LatentConsistencySession

__all__ = ['DenoisingLoop', 'LatentConsistencySession']
