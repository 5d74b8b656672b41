from ._dns import DNS01Responder
from ._http import HTTP01Resource, HTTP01Responder


__all__ = ['DNS01Responder', 'HTTP01Resource', 'HTTP01Responder']
