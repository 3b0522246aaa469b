from django.conf import settings
from django.core.exceptions import PermissionDenied

from .models import Investor


def require_admin(admin_id, using="default") -> Investor:
    """
    Admin authorization for ledger operations.

    The id must be on the ADMIN_USER_IDS allow-list and belong to an existing
    investor; raises PermissionDenied otherwise.
    """
    allowed = {str(a) for a in getattr(settings, "ADMIN_USER_IDS", [])}
    if str(admin_id) not in allowed:
        raise PermissionDenied("Unauthorized: admin privileges required")
    try:
        return Investor.objects.using(using).get(pk=admin_id)
    except (Investor.DoesNotExist, ValueError):
        raise PermissionDenied("Admin user not found")
