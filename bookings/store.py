"""
Document store adapter for the booking collections.

The booking service talks to persistence only through this adapter, which
offers single-document reads, filtered queries and an all-or-nothing batch
write. The store enforces no capacity or uniqueness rules; callers do.

Collections map onto the Django models:
    courses   -> Course
    instances -> ClassInstance
    bookings  -> Booking
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from django.core.exceptions import FieldError, ValidationError
from django.db import DatabaseError, transaction
from django.db.models import F, IntegerField, Value
from django.db.models.functions import Greatest
from django.utils import timezone

from .errors import StoreError
from .models import Booking, ClassInstance, Course
from .types import COLLECTION_BOOKINGS, COLLECTION_COURSES, COLLECTION_INSTANCES

logger = logging.getLogger(__name__)

WRITE_ADD = 'add'
WRITE_UPDATE = 'update'
WRITE_DELETE = 'delete'

_FILTER_LOOKUPS = {
    '==': 'exact',
    '<': 'lt',
    '<=': 'lte',
    '>': 'gt',
    '>=': 'gte',
    'in': 'in',
}

_STORE_FAILURES = (DatabaseError, FieldError, ValidationError)

WhereClause = Tuple[str, str, Any]
OrderClause = Tuple[str, str]


@dataclass(frozen=True)
class Increment:
    """
    Server-side numeric transform for ``update`` operations.

    The addition happens in the database, not on a previously read value.
    With ``floor`` set the result never drops below it.
    """
    amount: int = 1
    floor: Optional[int] = None

    def as_expression(self, field_name):
        expression = F(field_name) + Value(self.amount)
        if self.floor is not None:
            expression = Greatest(expression, Value(self.floor), output_field=IntegerField())
        return expression


@dataclass
class WriteOperation:
    """One create/update/delete inside a batch write."""
    type: str
    collection: str
    doc_id: Optional[Any] = None
    data: Optional[Dict[str, Any]] = None


class DocumentStore:
    """Document CRUD, simple queries and atomic batches over the ORM."""

    collections = {
        COLLECTION_COURSES: Course,
        COLLECTION_INSTANCES: ClassInstance,
        COLLECTION_BOOKINGS: Booking,
    }

    def model_for(self, collection: str):
        """Resolve a collection name to its model class."""
        try:
            return self.collections[collection]
        except KeyError:
            raise StoreError(
                f"Unknown collection '{collection}'",
                code='UNKNOWN_COLLECTION'
            ) from None

    def get_document(self, collection: str, doc_id: Any):
        """
        Fetch one document by identifier.

        Returns:
            The model instance, or None if no such document exists. An id
            that is not a valid key for the collection finds nothing.

        Raises:
            StoreError: If the read fails
        """
        model = self.model_for(collection)
        try:
            pk = model._meta.pk.to_python(doc_id)
        except ValidationError:
            return None

        try:
            return model.objects.filter(pk=pk).first()
        except _STORE_FAILURES as exc:
            raise StoreError(str(exc), code='GET_DOCUMENT_ERROR') from exc

    def query_documents(
        self,
        collection: str,
        where: Optional[Sequence[WhereClause]] = None,
        order_by: Optional[Sequence[OrderClause]] = None,
        limit: Optional[int] = None
    ) -> List[Any]:
        """
        Run a filtered, ordered and limited query against a collection.

        Args:
            collection: Collection name
            where: (field, operator, value) triples, all of which must hold;
                   operators are ==, !=, <, <=, >, >= and in
            order_by: (field, 'asc' | 'desc') pairs
            limit: Maximum number of documents to return

        Raises:
            StoreError: If the query is malformed or the read fails
        """
        model = self.model_for(collection)
        try:
            queryset = model.objects.all()
            for field_name, operator, value in where or ():
                queryset = _apply_filter(queryset, field_name, operator, value)
            if order_by:
                queryset = queryset.order_by(*[_order_term(*clause) for clause in order_by])
            if limit is not None:
                queryset = queryset[:limit]
            return list(queryset)
        except _STORE_FAILURES as exc:
            raise StoreError(str(exc), code='GET_DOCUMENTS_ERROR') from exc

    def batch_write(self, operations: Iterable[WriteOperation]) -> List[Any]:
        """
        Apply a set of writes together or not at all.

        An update or delete that finds no document fails the whole batch.

        Returns:
            Identifiers of the documents created by ``add`` operations,
            in the order the operations were given

        Raises:
            StoreError: If any operation fails; nothing is written
        """
        operations = list(operations)
        added_ids = []
        try:
            with transaction.atomic():
                for operation in operations:
                    added_id = self._apply(operation)
                    if added_id is not None:
                        added_ids.append(added_id)
        except _STORE_FAILURES as exc:
            raise StoreError(str(exc), code='BATCH_WRITE_ERROR') from exc

        logger.debug("Committed batch of %d operation(s)", len(operations))
        return added_ids

    def _apply(self, operation: WriteOperation):
        model = self.model_for(operation.collection)
        data = dict(operation.data or {})

        if operation.type == WRITE_ADD:
            return model.objects.create(**data).pk

        if operation.doc_id is None:
            raise StoreError(
                f"{operation.type} on '{operation.collection}' needs a document id",
                code='BATCH_WRITE_ERROR'
            )

        if operation.type == WRITE_UPDATE:
            values = {
                name: value.as_expression(name) if isinstance(value, Increment) else value
                for name, value in data.items()
            }
            values['updated_at'] = timezone.now()
            changed = model.objects.filter(pk=operation.doc_id).update(**values)
        elif operation.type == WRITE_DELETE:
            changed, _ = model.objects.filter(pk=operation.doc_id).delete()
        else:
            raise StoreError(
                f"Unsupported write type '{operation.type}'",
                code='BATCH_WRITE_ERROR'
            )

        if not changed:
            raise StoreError(
                f"No document {operation.collection}/{operation.doc_id}",
                code='DOCUMENT_NOT_FOUND'
            )
        return None


def _apply_filter(queryset, field_name, operator, value):
    """Narrow a queryset by one (field, operator, value) clause."""
    if operator == '!=':
        return queryset.exclude(**{field_name: value})
    try:
        lookup = _FILTER_LOOKUPS[operator]
    except KeyError:
        raise StoreError(
            f"Unsupported query operator '{operator}'",
            code='GET_DOCUMENTS_ERROR'
        ) from None
    return queryset.filter(**{f'{field_name}__{lookup}': value})


def _order_term(field_name, direction='asc'):
    return f'-{field_name}' if direction == 'desc' else field_name
