"""Desired-state document loading and validation.

A document declares typed resources and the references between them:

    name: web-stack
    resources:
      - type: aws_subnet
        name: public_a
        attributes:
          vpc_id: ref(aws_vpc, main, id)
          cidr_block: 10.0.1.0/24
    outputs:
      subnet_id: ref(aws_subnet, public_a, id)
    replace_on:
      aws_subnet: [cidr_block]

References use the string form `ref(type, name, attribute_path)` or the
mapping form `{ref: {type: ..., name: ..., attribute: ...}}` and may appear
at any depth inside lists and mappings. Forward references are allowed;
resolving them is the graph builder's job, not the loader's.

replace_on lists, per resource type, the attributes whose change cannot be
applied in place and forces a destroy-then-create replacement.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from common import NAME_PATTERN, ResourceId
from config import ConfigError

logger = logging.getLogger(__name__)

_REF_PATTERN = re.compile(
    r'^\s*ref\(\s*([A-Za-z0-9_-]+)\s*,\s*([A-Za-z0-9_-]+)\s*,\s*([A-Za-z0-9_.-]+)\s*\)\s*$'
)


@dataclass(frozen=True)
class Reference:
    """Pointer to an attribute of another resource.

    Attributes:
        target: Identity of the producing resource
        attribute: Dotted attribute path (integer segments index lists)
    """
    target: ResourceId
    attribute: str

    @property
    def path(self) -> list[str]:
        return self.attribute.split('.')

    @property
    def root_attribute(self) -> str:
        """Top-level attribute name the reference reads from."""
        return self.path[0]

    def __str__(self) -> str:
        return f'ref({self.target.type}, {self.target.name}, {self.attribute})'

    @classmethod
    def parse(cls, value: Any) -> Optional['Reference']:
        """Return a Reference if value is a reference expression, else None.

        Raises:
            ConfigError: If value looks like a reference but is malformed
        """
        if isinstance(value, str):
            if not value.lstrip().startswith('ref('):
                return None
            match = _REF_PATTERN.match(value)
            if not match:
                raise ConfigError(f"Malformed reference expression: {value!r}")
            rtype, name, attribute = match.groups()
            return cls(ResourceId(rtype, name), attribute)

        if isinstance(value, dict) and set(value) == {'ref'}:
            body = value['ref']
            if not isinstance(body, dict):
                raise ConfigError(f"Malformed reference mapping: {value!r}")
            missing = [k for k in ('type', 'name', 'attribute') if not body.get(k)]
            if missing:
                raise ConfigError(
                    f"Reference mapping missing field(s) {', '.join(missing)}: {value!r}"
                )
            for key in ('type', 'name'):
                if not NAME_PATTERN.match(str(body[key])):
                    raise ConfigError(f"Invalid reference {key} {body[key]!r} in {value!r}")
            return cls(ResourceId(str(body['type']), str(body['name'])), str(body['attribute']))

        return None


def parse_value(value: Any) -> Any:
    """Replace reference expressions with Reference objects, recursively."""
    ref = Reference.parse(value)
    if ref is not None:
        return ref
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference inside a parsed value, depth first."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_references(v)


def unparse_value(value: Any) -> Any:
    """Inverse of parse_value: render References back to their string form."""
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, dict):
        return {k: unparse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unparse_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ResourceDecl:
    """A single resource declaration.

    Attributes:
        type: Resource type (e.g. aws_subnet)
        name: Logical name, unique per type
        attributes: Desired attributes; values may contain References
        depends_on: Ordering-only dependencies with no attribute borrowed
        index: Position in the document's resources list
    """
    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[ResourceId, ...] = ()
    index: int = 0

    @property
    def identity(self) -> ResourceId:
        return ResourceId(self.type, self.name)

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceDecl':
        """Create ResourceDecl from dictionary.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Resource {index} must be a mapping")
        for key in ('type', 'name'):
            if not data.get(key):
                raise ConfigError(
                    f"Resource {index} ({data.get('name', 'unnamed')}) missing required field: {key}"
                )
            if not NAME_PATTERN.match(str(data[key])):
                raise ConfigError(
                    f"Resource {index} {key} {data[key]!r} may only contain letters, digits, '_' and '-'"
                )

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Resource {index} ({data['name']}) attributes must be a mapping")

        depends_on = []
        for entry in data.get('depends_on') or []:
            try:
                depends_on.append(ResourceId.parse(str(entry)))
            except ValueError as e:
                raise ConfigError(f"Resource {index} ({data['name']}): {e}")

        try:
            parsed = {str(k): parse_value(v) for k, v in attributes.items()}
        except ConfigError as e:
            raise ConfigError(f"Resource {index} ({data['name']}): {e}")

        return cls(
            type=str(data['type']),
            name=str(data['name']),
            attributes=parsed,
            depends_on=tuple(depends_on),
            index=index,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'attributes': unparse_value(self.attributes),
        }
        if self.depends_on:
            d['depends_on'] = [str(i) for i in self.depends_on]
        return d


@dataclass(frozen=True)
class Document:
    """Desired-state document.

    Attributes:
        name: Document identifier (also names the default state directory)
        resources: Resource declarations in document order
        outputs: Output name -> Reference into resolved actual state
        settings: Per-document engine setting overrides
        replace_on: Resource type -> attributes whose change forces replacement
        description: Optional description
        source_path: Path the document was loaded from (for messages)
    """
    name: str
    resources: tuple[ResourceDecl, ...]
    outputs: dict[str, Reference] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    replace_on: dict[str, tuple[str, ...]] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Document':
        """Create Document from dictionary.

        Raises:
            ConfigError: If document is malformed
        """
        if not isinstance(data, dict):
            raise ConfigError("Document must be a mapping")
        if not data.get('name'):
            raise ConfigError("Document missing required field: name")
        if not NAME_PATTERN.match(str(data['name'])):
            raise ConfigError(
                f"Document name {data['name']!r} may only contain letters, digits, '_' and '-'"
            )

        raw_resources = data.get('resources')
        if raw_resources is None:
            raise ConfigError("Document missing required field: resources")
        if not isinstance(raw_resources, list):
            raise ConfigError("Document resources must be a list")

        resources = tuple(
            ResourceDecl.from_dict(item, index=i) for i, item in enumerate(raw_resources)
        )

        outputs: dict[str, Reference] = {}
        for out_name, value in (data.get('outputs') or {}).items():
            ref = Reference.parse(value)
            if ref is None:
                raise ConfigError(f"Output '{out_name}' must be a reference, got {value!r}")
            outputs[str(out_name)] = ref

        settings = data.get('settings') or {}
        if not isinstance(settings, dict):
            raise ConfigError("Document settings must be a mapping")

        return cls(
            name=str(data['name']),
            resources=resources,
            outputs=outputs,
            settings=dict(settings),
            replace_on=_parse_replace_on(data.get('replace_on')),
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Document':
        """Create Document from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid document JSON: {e}")
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert document to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'name': self.name,
            'resources': [r.to_dict() for r in self.resources],
        }
        if self.description:
            result['description'] = self.description
        if self.outputs:
            result['outputs'] = {k: str(v) for k, v in self.outputs.items()}
        if self.settings:
            result['settings'] = dict(self.settings)
        if self.replace_on:
            result['replace_on'] = {k: list(v) for k, v in self.replace_on.items()}
        return result


def _parse_replace_on(raw: Any) -> dict[str, tuple[str, ...]]:
    """Validate the replace_on block: resource type -> list of attribute names."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Document replace_on must be a mapping of resource type to attribute list")
    parsed: dict[str, tuple[str, ...]] = {}
    for rtype, attributes in raw.items():
        if not NAME_PATTERN.match(str(rtype)):
            raise ConfigError(f"replace_on: invalid resource type {rtype!r}")
        if not isinstance(attributes, list) or not all(isinstance(a, str) and a for a in attributes):
            raise ConfigError(f"replace_on.{rtype} must be a list of attribute names")
        parsed[str(rtype)] = tuple(attributes)
    return parsed

class DocumentLoader:
    """Loads desired-state documents from YAML or JSON files."""

    def load_file(self, path: Path) -> Document:
        """Load document from a file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Document file not found: {path}")

        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                try:
                    data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Invalid JSON in document {path}: {e}")
            else:
                try:
                    data = yaml.safe_load(f)
                except yaml.YAMLError as e:
                    raise ConfigError(f"Invalid YAML in document {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Document {path} must be a YAML object (dict)")

        document = Document.from_dict(data, source_path=path)
        logger.debug(f"Loaded document '{document.name}' ({len(document.resources)} resources) from {path}")
        return document


def load_document(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Document:
    """Load a document from inline JSON or a file path.

    Raises:
        ConfigError: If no source given, or the document is invalid
    """
    if json_str:
        return Document.from_json(json_str)
    if file_path:
        return DocumentLoader().load_file(Path(file_path))
    raise ConfigError("No document source given (file path or JSON string)")
