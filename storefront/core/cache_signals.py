"""
Cache invalidation signals
Automatically invalidate cache when catalog data changes
"""
from django.db.models.signals import post_save, post_delete
from django.db import transaction
from django.dispatch import receiver
import logging
import threading
from contextlib import contextmanager

from storefront.catalog.models import Product
from .cache_utils import invalidate_products_cache

logger = logging.getLogger(__name__)

# Thread-local storage to track signal suspension
_thread_locals = threading.local()


@contextmanager
def suspend_cache_signals():
    """
    Context manager to temporarily suspend cache invalidation signals.
    Useful for bulk operations (e.g. seeding) to prevent excessive cache clearing.
    Remember to manually invalidate cache after the block!
    """
    try:
        _thread_locals.suspended = True
        yield
    finally:
        _thread_locals.suspended = False


def is_suspended():
    return getattr(_thread_locals, 'suspended', False)


@receiver(post_save, sender=Product)
@receiver(post_delete, sender=Product)
def invalidate_product_cache_on_change(sender, instance, **kwargs):
    if is_suspended():
        return
    logger.debug(f"Product {instance.pk} changed, invalidating product caches")
    # After commit, so a concurrent read cannot re-cache the old rows
    transaction.on_commit(invalidate_products_cache)
