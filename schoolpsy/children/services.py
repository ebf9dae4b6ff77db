"""
Child ownership lookups used by the result store.
"""

from .models import Child


def child_belongs_to_psychologist(child_id, psychologist_id, using='default') -> bool:
    """True if the child exists and is owned by the psychologist"""
    return Child.objects.using(using).filter(
        pk=child_id, psychologist_id=psychologist_id
    ).exists()
