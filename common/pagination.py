from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for ledger, purchase, audit and sales lists.

    ``?page_size=`` is honoured up to ``max_page_size``; responses carry the
    current page and page count next to DRF's ``count/next/previous/results``.
    """

    page_size_query_param = "page_size"
    max_page_size = 200

    def get_paginated_response(self, data):
        return Response(
            {
                "count": self.page.paginator.count,
                "page": self.page.number,
                "page_count": self.page.paginator.num_pages,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "results": data,
            }
        )

    def get_paginated_response_schema(self, schema):
        schema = super().get_paginated_response_schema(schema)
        schema["properties"]["page"] = {"type": "integer", "example": 1}
        schema["properties"]["page_count"] = {"type": "integer", "example": 3}
        return schema
