from enum import Enum


class ScopeType(str, Enum):
    """
    Scopes known by the server. They are seeded as the default allowed scopes and advertised in the server metadata.

    A client may be registered with other scope strings, they are matched as opaque tokens.
    """

    # Read the authenticated user's profile
    read_profile = "read:profile"
    # Modify the authenticated user's profile
    write_profile = "write:profile"
    # Some services may ask to access the user's email
    read_email = "read:email"
    # admin allows to manage the registered clients through the /auth/clients endpoints
    admin = "admin"
