"""Read-side managers for the relay server.

Managers encapsulate filesystem access and never raise HTTP exceptions;
translating failures is the router's responsibility.
"""
