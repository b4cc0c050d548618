import math

from rest_framework import status as http_status
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


def envelope(data=None, message=None, status=http_status.HTTP_200_OK, **extra):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return Response(body, status=status)


class EnvelopePagination(PageNumberPagination):
    page_size = 10
    page_size_query_param = "limit"
    max_page_size = 100

    def paginate_queryset(self, queryset, request, view=None):
        """Pages past the end clamp to the last page instead of raising 404."""
        self.request = request
        page_size = self.get_page_size(request)
        if not page_size:
            return None
        paginator = self.django_paginator_class(queryset, page_size)
        self.page = paginator.get_page(self.get_page_number(request, paginator))
        return list(self.page)

    def get_paginated_response(self, data, **extra):
        limit = self.get_page_size(self.request)
        total = self.page.paginator.count
        pagination = {
            "page": self.page.number,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        }
        return envelope(data, pagination=pagination, **extra)
