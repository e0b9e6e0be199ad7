from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tissue_migrate.config.loader import ConfigurationError
from tissue_migrate.db.persistence import Persistence, PersistenceError
from tissue_migrate.logging.bad_records import BadRecordSink
from tissue_migrate.models.config_models import MigrationOptions
from tissue_migrate.models.graph import GraphNode
from tissue_migrate.models.migration_result import MigrationResult, RowOutcome, RowState, WriteRecord
from tissue_migrate.models.row_data import RowData
from tissue_migrate.models.schema import AttributeSchema, DomainSchema, load_schema
from tissue_migrate.source.reader import CsvRowSource
from tissue_migrate.vocab.cache import VocabularyCache, VocabularyError, get_vocabulary_cache

from .defaults import ABSENT, DefaultProvider, load_default_files
from .field_mapper import AttributePath, FieldMapper, FieldMapping, load_mapping_files
from .progress import ProgressTracker
from .shims import ShimRegistry, load_shim_files
from .uniquify import Uniquifier
from .value_filter import ValueFilter, load_filter_files
from .writer import GraphWriter

"""Migration engine.

Each input row is advanced through the RowState machine and becomes one target
graph rooted at the target class:

    pending → mapped → resolved → defaulted → shim_applied → validated → (written | rejected)

Row-level failures (unresolved controlled value, coercion or validation
failure, a raising shim, a vocabulary store failure) reject the row: it goes to
the bad-record sink with its reason and the run continues. A persistence
failure rejects and records the row, then propagates to the caller.

Rows are processed strictly one at a time; a stop signal is honoured only
between rows. In commit mode each row's graph is written in its own
transaction.
"""

__all__ = [
    "Migrator",
    "StopSignal",
    "ValidationError",
]

logger = logging.getLogger(__name__)

# threading.Event 相当 (is_set) または引数なし callable
StopSignal = Any


class ValidationError(Exception):
    """Row-level structural, mandatory-attribute or value coercion failure."""


@dataclass
class _Assignment:
    path: AttributePath
    value: Any
    mapping: FieldMapping | None = None  # None for a default
    defaulted: bool = False

    @property
    def source(self) -> str:
        return self.mapping.field if self.mapping is not None else f"default {self.path}"


def _stop_requested(stop: StopSignal | None) -> bool:
    if stop is None:
        return False
    is_set = getattr(stop, "is_set", None)
    if is_set is not None:
        return bool(is_set())
    return bool(stop())


class Migrator:
    """Migrates rows into target graphs; see module docstring."""

    def __init__(
        self,
        schema: DomainSchema,
        target: str,
        mapper: FieldMapper,
        *,
        value_filter: ValueFilter | None = None,
        defaults: DefaultProvider | None = None,
        shims: ShimRegistry | None = None,
        vocabulary: VocabularyCache | None = None,
        persistence: Persistence | None = None,
        bad_sink: BadRecordSink | None = None,
        source: Iterable[RowData] | None = None,
        unique: bool = False,
        offset: int = 0,
        create_only: bool = False,
        uniquifier: Uniquifier | None = None,
    ) -> None:
        if target not in schema:
            raise ConfigurationError(f"target class '{target}' is not defined in the schema")
        if mapper.target != target:
            raise ConfigurationError(f"mapping target {mapper.target} does not match {target}")
        if offset < 0:
            raise ConfigurationError(f"offset must be >= 0: {offset}")
        self.schema = schema
        self.target = target
        self.mapper = mapper
        self.value_filter = value_filter or ValueFilter()
        self.defaults = defaults or DefaultProvider()
        self.shims = shims or ShimRegistry()
        self.persistence = persistence
        self.bad_sink = bad_sink if bad_sink is not None else BadRecordSink()
        self.source = source
        self.unique = unique
        self.offset = offset
        self.create_only = create_only
        self.uniquifier = uniquifier or Uniquifier()
        self.stopped = False

        self.shims.check_classes(schema.classes)
        self._default_paths = [AttributePath.resolve(schema, target, p) for p in self.defaults.paths()]
        self._check_paths()
        self.vocabulary = vocabulary if vocabulary is not None else self._global_vocabulary()

    @classmethod
    def from_options(
        cls,
        options: MigrationOptions,
        *,
        vocabulary: VocabularyCache | None = None,
        persistence: Persistence | None = None,
    ) -> Migrator:
        """Build a migrator from resolved run options (all files are loaded here)."""
        schema = load_schema(Path(options.schema))
        source = None
        if options.input:
            source = CsvRowSource(options.input, null_sentinels=options.null_sentinels)
        if vocabulary is not None and options.category_aliases:
            vocabulary.aliases.update(options.category_aliases)
        return cls(
            schema,
            options.target,
            load_mapping_files(options.mapping, schema, options.target),
            value_filter=load_filter_files(options.filters),
            defaults=load_default_files(options.defaults),
            shims=load_shim_files(options.shims),
            vocabulary=vocabulary,
            persistence=persistence,
            bad_sink=BadRecordSink(options.bad),
            source=source,
            unique=options.unique,
            offset=options.offset,
            create_only=options.create_only,
        )

    # -- configuration checks ----------------------------------------------

    def _owner_class(self, path: AttributePath) -> str:
        return self.target if path.depth == 1 else path.parents[-1].target  # type: ignore[return-value]

    def _check_paths(self) -> None:
        for path in self.mapper.paths():
            terminal = path.terminal
            if terminal.is_reference and self.shims.lookup(self._owner_class(path), terminal.name) is None:
                raise ConfigurationError(
                    f"mapped path '{path}' ends in reference {terminal.name} with no shim to build it"
                )
        for path in self._default_paths:
            value = self.defaults.default_for(path.text)
            if not path.terminal.is_reference:
                continue
            if not isinstance(value, dict):
                raise ConfigurationError(
                    f"default for reference path '{path}' must be a mapping of attribute values"
                )
            ref_cls = self.schema.get(path.terminal.target)  # type: ignore[arg-type]
            unknown = sorted(k for k in value if not ref_cls.has_attribute(k))
            if unknown:
                raise ConfigurationError(f"default for '{path}': {ref_cls.name} has no attributes {unknown}")

    def _needs_vocabulary(self) -> bool:
        return any(p.terminal.is_vocabulary for p in [*self.mapper.paths(), *self._default_paths])

    def _global_vocabulary(self) -> VocabularyCache | None:
        if not self._needs_vocabulary():
            return None
        try:
            return get_vocabulary_cache()
        except VocabularyError as e:
            raise ConfigurationError(f"vocabulary-typed attributes are mapped but {e}") from e

    # -- public API ---------------------------------------------------------

    def migrate(self, rows: Iterable[RowData] | None = None, stop: StopSignal | None = None) -> Iterator[RowOutcome]:
        """Dry run: yield one RowOutcome per row (root is None for rejected rows)."""
        yield from self._outcomes(rows, commit=False, stop=stop)

    def migrate_to_database(
        self, rows: Iterable[RowData] | None = None, stop: StopSignal | None = None
    ) -> Iterator[tuple[GraphNode, WriteRecord]]:
        """Commit mode: yield (root, WriteRecord) for every written row.

        Raises:
            PersistenceError: after the failing row was recorded as rejected
        """
        for outcome in self._outcomes(rows, commit=True, stop=stop):
            if outcome.state is RowState.WRITTEN:
                yield outcome.root, outcome.written  # type: ignore[misc]

    def run(
        self,
        rows: Iterable[RowData] | None = None,
        *,
        commit: bool = False,
        stop: StopSignal | None = None,
        on_outcome: Callable[[RowOutcome], None] | None = None,
    ) -> MigrationResult:
        """Drive a dry or commit run to completion and aggregate the counts."""
        start_time = datetime.now(UTC)
        processed = validated = written = rejected = 0
        with ProgressTracker(description="Migrating rows") as progress:
            for outcome in self._outcomes(rows, commit=commit, stop=stop):
                processed += 1
                if outcome.rejected:
                    rejected += 1
                else:
                    validated += 1
                    if outcome.state is RowState.WRITTEN:
                        written += 1
                progress.advance(rejected=outcome.rejected)
                progress.set_postfix(ok=validated, rejected=rejected)
                if on_outcome is not None:
                    on_outcome(outcome)
        end_time = datetime.now(UTC)
        elapsed = (end_time - start_time).total_seconds()
        bad_file = self.bad_sink.path if len(self.bad_sink) else None
        return MigrationResult(
            processed_rows=processed,
            validated_rows=validated,
            written_rows=written,
            rejected_rows=rejected,
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=elapsed,
            throughput_rows_per_sec=processed / elapsed if elapsed > 0 else 0.0,
            stopped=self.stopped,
            bad_file=str(bad_file) if bad_file is not None else None,
        )

    # -- row loop -----------------------------------------------------------

    def _rows(self, rows: Iterable[RowData] | None) -> Iterator[RowData]:
        if rows is None:
            rows = self.source
        if rows is None:
            raise ConfigurationError("no input: configure 'input' or pass rows")
        return itertools.islice(iter(rows), self.offset, None)

    def _outcomes(self, rows: Iterable[RowData] | None, commit: bool, stop: StopSignal | None) -> Iterator[RowOutcome]:
        if commit and self.persistence is None:
            raise ConfigurationError("commit mode requires a persistence collaborator")
        writer = GraphWriter(self.persistence, self.create_only) if commit else None  # type: ignore[arg-type]
        self.stopped = False
        try:
            for row in self._rows(rows):
                if _stop_requested(stop):
                    logger.info(f"Stop requested; halting before row {row.row_number}")
                    self.stopped = True
                    break
                outcome = self.process_row(row)
                if writer is not None and not outcome.rejected:
                    self._write(writer, row, outcome)
                if outcome.rejected:
                    logger.warning(f"Row {row.row_number} rejected: {outcome.reason}")
                    self.bad_sink.append(row, outcome.reason)
                yield outcome
        finally:
            self.bad_sink.flush()

    def _write(self, writer: GraphWriter, row: RowData, outcome: RowOutcome) -> None:
        root = outcome.root
        try:
            with self.persistence.transaction():  # type: ignore[union-attr]
                outcome.written = writer.write(root)  # type: ignore[arg-type]
        except PersistenceError as e:
            outcome.reject(f"persistence failure: {e}")
            logger.error(f"Row {row.row_number} could not be written: {e}")
            self.bad_sink.append(row, outcome.reason)
            raise
        outcome.state = RowState.WRITTEN
        logger.debug(
            f"Row {row.row_number} written: created={len(outcome.written.created)} "
            f"updated={len(outcome.written.updated)} unchanged={len(outcome.written.unchanged)}"
        )

    def process_row(self, row: RowData) -> RowOutcome:
        """Advance one row to VALIDATED or REJECTED (never writes)."""
        outcome = RowOutcome(row_number=row.row_number)
        try:
            assignments = self._map(row)
            outcome.state = RowState.MAPPED
            assignments = self._resolve(assignments, outcome)
            if outcome.rejected:
                return outcome
            outcome.state = RowState.RESOLVED
            assignments.extend(self._defaults_for(assignments))
            outcome.state = RowState.DEFAULTED
            root = self._build(row, assignments)
            outcome.state = RowState.SHIM_APPLIED
            self._validate(root)
        except (ValidationError, VocabularyError) as e:
            outcome.reject(e)
            return outcome
        outcome.root = root
        outcome.state = RowState.VALIDATED
        return outcome

    # -- states -------------------------------------------------------------

    def _map(self, row: RowData) -> list[_Assignment]:
        return [_Assignment(path, value, mapping) for mapping, path, value in self.mapper.map_row(row)]

    def _resolve(self, assignments: list[_Assignment], outcome: RowOutcome) -> list[_Assignment]:
        resolved: list[_Assignment] = []
        for a in assignments:
            terminal = a.path.terminal
            key = terminal.vocabulary_category if terminal.is_vocabulary else a.path.text
            a.value = self.value_filter.substitute(key, a.value)
            if not terminal.is_vocabulary:
                resolved.append(a)
                continue
            optional = a.mapping is not None and a.mapping.optional
            try:
                entry = self.vocabulary.resolve(key, a.value)  # type: ignore[union-attr]
            except VocabularyError as e:
                if optional:
                    logger.warning(f"Row {outcome.row_number}: dropping optional {a.source}: {e}")
                    continue
                outcome.reject(f"{a.source}: {e}")
                continue
            if entry is None:
                message = f"unresolved controlled value {key} {a.value!r} ({a.source})"
                if optional:
                    logger.warning(f"Row {outcome.row_number}: dropping optional {message}")
                    continue
                outcome.reject(message)
                continue
            a.value = entry.value
            resolved.append(a)
        return resolved

    def _defaults_for(self, assignments: list[_Assignment]) -> list[_Assignment]:
        present = {a.path.text for a in assignments}
        out: list[_Assignment] = []
        for path in self._default_paths:
            if path.text in present:
                continue
            value = self.defaults.default_for(path.text)
            if value is ABSENT:
                continue
            if path.terminal.is_vocabulary:
                category = path.terminal.vocabulary_category
                entry = self.vocabulary.resolve(category, value)  # type: ignore[union-attr]
                if entry is None:
                    raise ValidationError(f"unresolved controlled value {category} {value!r} (default {path})")
                value = entry.value
            out.append(_Assignment(path, value, defaulted=True))
        return out

    def _build(self, row: RowData, assignments: list[_Assignment]) -> GraphNode:
        root = GraphNode(self.schema, self.target)
        # 親 → 子 の順 (sorted は安定ソート)
        for a in sorted(assignments, key=lambda a: a.path.depth):
            node = root
            for attr in a.path.parents:
                node = node.child(attr)
            self._assign(node, a.path.terminal, a, row)
        self._run_hooks(root, row)
        self._check_validity(root)
        if self.unique:
            for node in root.walk():
                self.uniquifier.uniquify(node)
        return root

    def _assign(self, node: GraphNode, attr: AttributeSchema, a: _Assignment, row: RowData) -> None:
        if a.defaulted and node.has(attr.name):
            return
        if attr.is_reference and isinstance(a.value, dict):
            ref = node.child(attr)
            for name, value in a.value.items():
                ref.set(name, self._coerce(ref, ref.attribute(name), value))
            return
        try:
            value = self.shims.apply(node, attr.name, a.value, row)
        except (ValidationError, ConfigurationError):
            raise
        except Exception as e:
            raise ValidationError(f"{node.class_name}.{attr.name} shim rejected {a.source}: {e}") from e
        if value is None:
            return
        if isinstance(value, GraphNode):
            if attr.dependent and value.owner is None:
                value.owner = node
            if attr.is_collection:
                node.add(attr.name, value)
            else:
                node.set(attr.name, value)
            return
        value = self._coerce(node, attr, value)
        if attr.is_collection:
            for v in value if isinstance(value, list) else [value]:
                node.add(attr.name, v)
        else:
            node.set(attr.name, value)

    @staticmethod
    def _coerce(node: GraphNode, attr: AttributeSchema, value: Any) -> Any:
        try:
            if isinstance(value, list):
                return [attr.coerce(v) for v in value]
            return attr.coerce(value)
        except (ValueError, TypeError) as e:
            raise ValidationError(
                f"{node.class_name}.{attr.name}: invalid {attr.type} value {value!r}"
            ) from e

    def _run_hooks(self, root: GraphNode, row: RowData) -> None:
        hooked: set[int] = set()
        while True:
            pending = [n for n in root.walk() if id(n) not in hooked]
            if not pending:
                return
            for node in pending:
                hooked.add(id(node))
                for hook in self.shims.hooks_for(node.class_name):
                    try:
                        hook(node, row)
                    except (ValidationError, ConfigurationError):
                        raise
                    except Exception as e:
                        raise ValidationError(f"{node.class_name} hook {hook.__name__} failed: {e}") from e

    def _valid(self, node: GraphNode) -> bool:
        for validator in self.shims.validators_for(node.class_name):
            try:
                if not validator(node):
                    return False
            except (ValidationError, ConfigurationError):
                raise
            except Exception as e:
                raise ValidationError(
                    f"{node.class_name} validator {validator.__name__} failed: {e}"
                ) from e
        return True

    def _check_validity(self, root: GraphNode) -> None:
        if not self._valid(root):
            raise ValidationError(f"{root.class_name} failed the migration validity check")
        while True:
            invalid = next(
                (
                    (parent, attr, ref)
                    for parent in root.walk()
                    for attr, ref in parent.references()
                    if not self._valid(ref)
                ),
                None,
            )
            if invalid is None:
                return
            parent, attr, ref = invalid
            logger.debug(f"Pruning invalid {ref!r} from {parent.class_name}.{attr.name}")
            parent.remove(attr.name, ref)

    def _validate(self, root: GraphNode) -> None:
        reasons: list[str] = []
        labels: dict[int, str] = {id(root): self.target}
        for node in root.walk():
            label = labels[id(node)]
            for attr in node.cls.mandatory_attributes:
                if not node.has(attr.name):
                    reasons.append(f"missing mandatory attribute {label}.{attr.name}")
            for attr, ref in node.references():
                labels.setdefault(id(ref), f"{label}.{attr.name}")
                if attr.dependent and ref.owner is not node:
                    reasons.append(f"{label}.{attr.name}: dependent {ref.class_name} has another owner")
        if reasons:
            raise ValidationError("; ".join(reasons))
