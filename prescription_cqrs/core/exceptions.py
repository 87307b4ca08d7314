class NotFoundError(Exception):
    """Raised when a requested record does not exist (read models or reference data)."""


class ReferenceNotFoundError(NotFoundError):
    """A prescriber, patient, medication or prescription referenced by id is missing."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class EventDecodeError(ValueError):
    """
    A broker message or outbox payload could not be decoded.
    Permanent: redelivering the same bytes will fail the same way.
    """
