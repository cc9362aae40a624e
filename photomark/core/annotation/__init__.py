"""
Annotation state: markers, snapshots and the undoable marker store.
"""

from photomark.core.annotation.markers import AnnotationSnapshot, Marker
from photomark.core.annotation.store import AnnotationStore

__all__ = ["AnnotationSnapshot", "AnnotationStore", "Marker"]
