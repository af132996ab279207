"""Pagination for the staff log listings."""
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination


class BoundedPageNumberPagination(PageNumberPagination):
    """Page-number pagination with a capped client-chosen page size."""

    page_size = 50
    page_size_query_param = "page_size"
    max_page_size = 200
