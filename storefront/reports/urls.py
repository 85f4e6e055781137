from django.urls import path
from .views import summary, sales

urlpatterns = [
    path('reports/summary/', summary, name='report-summary'),
    path('reports/sales/', sales, name='report-sales'),
]
