"""
Management command to load the sample catalog
"""
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from storefront.catalog.models import Product
from storefront.core.cache_signals import suspend_cache_signals
from storefront.core.cache_utils import invalidate_products_cache

SAMPLE_PRODUCTS = [
    {
        'name': 'Wireless Headphones',
        'description': 'Premium noise-cancelling wireless headphones with 30-hour battery life.',
        'price': Decimal('199.99'),
        'stock_quantity': 45,
        'category': 'Electronics',
        'image_url': 'https://images.unsplash.com/photo-1505740420928-5e560c06d30e?q=80&w=500',
    },
    {
        'name': 'Smart Watch',
        'description': 'Fitness tracker with heart rate monitoring, GPS, and water resistance.',
        'price': Decimal('249.99'),
        'stock_quantity': 30,
        'category': 'Electronics',
        'image_url': 'https://images.unsplash.com/photo-1546868871-7041f2a55e12?q=80&w=500',
    },
    {
        'name': 'Yoga Mat',
        'description': 'Non-slip, eco-friendly yoga mat, perfect for home workouts.',
        'price': Decimal('29.99'),
        'stock_quantity': 100,
        'category': 'Fitness',
        'image_url': 'https://images.unsplash.com/photo-1592432678016-e910b452f9a2?q=80&w=500',
    },
    {
        'name': 'Coffee Maker',
        'description': 'Programmable coffee maker with built-in grinder and thermal carafe.',
        'price': Decimal('129.99'),
        'stock_quantity': 25,
        'category': 'Home',
        'image_url': 'https://images.unsplash.com/photo-1606483956061-46a898dce538?q=80&w=500',
    },
    {
        'name': 'Leather Backpack',
        'description': 'Handcrafted genuine leather backpack with multiple compartments.',
        'price': Decimal('89.99'),
        'stock_quantity': 15,
        'category': 'Fashion',
        'image_url': 'https://images.unsplash.com/photo-1622560480605-d83c853bc5c3?q=80&w=500',
    },
    {
        'name': 'Portable Speaker',
        'description': 'Waterproof Bluetooth speaker with 12-hour playback time.',
        'price': Decimal('69.99'),
        'stock_quantity': 50,
        'category': 'Electronics',
        'image_url': 'https://images.unsplash.com/photo-1589003077984-89c5c6b5261f?q=80&w=500',
    },
    {
        'name': 'Succulent Plant Set',
        'description': 'Set of 5 miniature succulent plants in decorative ceramic pots.',
        'price': Decimal('24.99'),
        'stock_quantity': 30,
        'category': 'Home',
        'image_url': 'https://images.unsplash.com/photo-1459411552884-841db9b3cc2a?q=80&w=500',
    },
    {
        'name': 'Stainless Steel Water Bottle',
        'description': 'Double-walled insulated water bottle, keeps drinks cold for 24 hours.',
        'price': Decimal('19.99'),
        'stock_quantity': 75,
        'category': 'Fitness',
        'image_url': 'https://images.unsplash.com/photo-1602143407151-7111542de6e8?q=80&w=500',
    },
]


class Command(BaseCommand):
    help = "Loads the sample product catalog"

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Delete all existing products before seeding',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(self.style.SUCCESS("SEEDING SAMPLE PRODUCTS"))
        self.stdout.write(self.style.SUCCESS("=" * 80))

        created_count = 0
        skipped_count = 0

        with suspend_cache_signals(), transaction.atomic():
            if options['clear']:
                self.stdout.write(self.style.WARNING("Clearing all existing products..."))
                Product.objects.all().delete()

            for data in SAMPLE_PRODUCTS:
                defaults = {k: v for k, v in data.items() if k != 'name'}
                product, created = Product.objects.get_or_create(name=data['name'], defaults=defaults)
                if created:
                    created_count += 1
                    self.stdout.write(self.style.SUCCESS(f"  ✓ Created: {product.name}"))
                else:
                    skipped_count += 1
                    self.stdout.write(self.style.WARNING(f"  ⊘ Skipped (already exists): {product.name}"))

        invalidate_products_cache()

        self.stdout.write(self.style.SUCCESS("\n" + "=" * 80))
        self.stdout.write(self.style.SUCCESS("SUMMARY"))
        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(f"Products Created: {created_count}")
        self.stdout.write(f"Products Skipped (already exist): {skipped_count}")
        self.stdout.write(f"Total Products in Database: {Product.objects.count()}")
