# errors.py
"""
Error taxonomy for the lobby.

- InvalidState: operation attempted outside its legal round status
- ValidationError: malformed bet / multiplier, rejected before any mutation
- CollaboratorError: the session/settlement backend refused a request
"""


class LobbyError(Exception):
    """Base lobby error"""


class InvalidState(LobbyError):
    """Operation performed in invalid round status"""


class ValidationError(LobbyError):
    """Invalid bet parameters"""


class CollaboratorError(LobbyError):
    """Session / settlement backend failure"""


class SessionError(CollaboratorError):
    """Session could not be opened"""


class SignatureTimeoutError(CollaboratorError):
    """Participants did not sign within the grace period"""


class SettlementError(CollaboratorError):
    """Settlement could not be finalized"""
