"""
Derivative media assets: thumbnails and source artifact retention.
"""

from .thumbnails import ThumbnailGenerator
from .retention import ArtifactRetentionPolicy

__all__ = ['ThumbnailGenerator', 'ArtifactRetentionPolicy']
