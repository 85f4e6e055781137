import django_filters
from django.db.models import Q

from .models import Product


class ProductFilter(django_filters.FilterSet):
    """Catalog browsing filters using django-filter"""

    # Searches name, description and category
    search = django_filters.CharFilter(method='filter_search', label='Search')

    category = django_filters.CharFilter(field_name='category', lookup_expr='iexact')
    min_price = django_filters.NumberFilter(field_name='price', lookup_expr='gte')
    max_price = django_filters.NumberFilter(field_name='price', lookup_expr='lte')
    in_stock = django_filters.BooleanFilter(method='filter_in_stock', label='In Stock')

    ordering = django_filters.OrderingFilter(
        fields=(
            ('name', 'name'),
            ('price', 'price'),
            ('stock_quantity', 'stock_quantity'),
            ('created_at', 'created_at'),
        )
    )

    class Meta:
        model = Product
        fields = ['search', 'category', 'min_price', 'max_price', 'in_stock']

    def filter_search(self, queryset, name, value):
        """
        Every word must appear in the name, description or category.
        "steel bottle" matches "Stainless Steel Water Bottle".
        """
        if not value or not value.strip():
            return queryset

        for word in value.split():
            queryset = queryset.filter(
                Q(name__icontains=word) |
                Q(description__icontains=word) |
                Q(category__icontains=word)
            )
        return queryset

    def filter_in_stock(self, queryset, name, value):
        if value is True:
            return queryset.filter(stock_quantity__gt=0)
        if value is False:
            return queryset.filter(stock_quantity=0)
        return queryset
