from __future__ import annotations

from cdc_logical_apply.models import RelationSchema


class UnknownRelationError(LookupError):
    """Raised when a row event references a relation that was never described."""

    def __init__(self, relation_id: int) -> None:
        super().__init__(f"Unknown relation ID {relation_id}")
        self.relation_id = relation_id


class RelationCache:
    """Relation schemas received on the current replication session, by relation ID."""

    def __init__(self) -> None:
        self._relations: dict[int, RelationSchema] = {}

    def put(self, relation: RelationSchema) -> None:
        self._relations[relation.relation_id] = relation

    def get(self, relation_id: int) -> RelationSchema:
        try:
            return self._relations[relation_id]
        except KeyError:
            raise UnknownRelationError(relation_id) from None

    def __contains__(self, relation_id: object) -> bool:
        return relation_id in self._relations

    def __len__(self) -> int:
        return len(self._relations)
