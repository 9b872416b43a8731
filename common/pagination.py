from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for stock and audit list endpoints.

    `?page_size=` lets clients ask for a full stock sheet in one page, capped
    so a single response stays bounded.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
