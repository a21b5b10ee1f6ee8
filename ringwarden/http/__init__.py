from .http_message import (
    HOP_BY_HOP_HEADERS as HOP_BY_HOP_HEADERS,
    IDEMPOTENT_METHODS as IDEMPOTENT_METHODS,
    REASONS as REASONS,
    HTTPParseError as HTTPParseError,
    HTTPRequest as HTTPRequest,
    HTTPResponse as HTTPResponse,
    encode_request as encode_request,
    encode_response as encode_response,
    find_header as find_header,
    read_body as read_body,
    read_request as read_request,
    read_request_head as read_request_head,
    read_response as read_response,
    strip_hop_by_hop as strip_hop_by_hop,
)
