"""Per-request state for the edge relay."""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from edge_relay.models import ChatMessage, RequestMeta


@dataclass
class RequestContext:
    """Everything one relay request accumulates on its way through the pipeline.

    Constructed at request entry and passed explicitly to each stage; never
    shared between requests.
    """

    route: str
    origin: str = ""
    token: str = ""
    request_id: str = field(default_factory=lambda: "rl-{}".format(uuid.uuid4().hex[:12]))
    messages: List[ChatMessage] = field(default_factory=list)
    meta: RequestMeta = field(default_factory=RequestMeta)
    language: Optional[str] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
