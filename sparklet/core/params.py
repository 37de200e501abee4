"""Typed, validated parameters shared by every pipeline stage."""

import copy
import uuid
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Sequence, Tuple

from pydantic import AfterValidator, Field, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ParameterError

_NO_DEFAULT = object()

ParamMap = Dict[Tuple[str, str], Any]


def make_uid(prefix: str) -> str:
    """Unique stage id such as ``string_indexer_4f1c2a9b0d3e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


def _strictly_increasing(values: Sequence[float]) -> Sequence[float]:
    if any(a >= b for a, b in zip(values, values[1:])):
        raise ValueError("values must be strictly increasing")
    return values


# Value types used in parameter declarations; any pydantic-compatible type works.
Flag = StrictBool
Number = StrictFloat
NonNegative = Annotated[StrictFloat, Field(ge=0.0)]
Positive = Annotated[StrictFloat, Field(gt=0.0)]
Fraction = Annotated[StrictFloat, Field(ge=0.0, le=1.0)]
OpenFraction = Annotated[StrictFloat, Field(gt=0.0, lt=1.0)]
PositiveInt = Annotated[StrictInt, Field(ge=1)]
ColumnName = Annotated[StrictStr, Field(min_length=1)]
ColumnNames = Annotated[List[ColumnName], Field(min_length=1)]
Labels = Annotated[List[StrictStr], Field(min_length=1)]
Expression = Annotated[StrictStr, AfterValidator(_not_blank)]
Splits = Annotated[List[float], Field(min_length=3), AfterValidator(_strictly_increasing)]


class Param:
    """
    Declaration of one named parameter.

    ``value_type`` is any type pydantic can validate, typically one of the
    annotated aliases above, a ``Literal`` of the allowed choices or a
    ``StrictInt`` with ``Field`` bounds. Values are validated, and coerced
    where the type allows it (tuples become lists, integers floats), when
    they are set.
    """

    def __init__(self, name: str, doc: str, default: Any = _NO_DEFAULT, value_type: Any = Any):
        self.name = name
        self.doc = doc
        self.default = default
        self.value_type = value_type
        self._adapter = TypeAdapter(value_type)

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def validate(self, value: Any, owner: str = "") -> Any:
        try:
            return self._adapter.validate_python(value)
        except PydanticValidationError as e:
            reasons = "; ".join(error["msg"] for error in e.errors())
            raise ParameterError(f"{owner}: invalid value {value!r} for parameter '{self.name}' ({reasons})",
                                 {"param": self.name, "stage": owner, "value": repr(value)})

    def __repr__(self) -> str:
        return f"Param({self.name})"


class Params:
    """
    Base class for objects carrying named parameters.

    Parameters are declared as a ``params`` tuple on the class; subclasses
    inherit their parents' declarations. Instances are treated as values:
    ``set`` and ``copy`` return new instances and never mutate the receiver.
    """

    params: ClassVar[Tuple[Param, ...]] = ()
    uid_prefix: ClassVar[str] = "params"

    def __init__(self, uid: Optional[str] = None, **kwargs):
        self.uid = uid or make_uid(self.uid_prefix)
        self._values: Dict[str, Any] = {}
        self._set(**kwargs)

    @classmethod
    def param_definitions(cls) -> Dict[str, Param]:
        definitions: Dict[str, Param] = {}
        for klass in reversed(cls.__mro__):
            for param in getattr(klass, "params", ()) if "params" in vars(klass) else ():
                definitions[param.name] = param
        return definitions

    def _set(self, **kwargs) -> None:
        definitions = self.param_definitions()
        for name, value in kwargs.items():
            if name not in definitions:
                raise ParameterError(f"{self.uid}: unknown parameter '{name}'. "
                                     f"Known parameters: {sorted(definitions)}",
                                     {"param": name, "stage": self.uid})
            self._values[name] = definitions[name].validate(value, self.uid)

    def has_param(self, name: str) -> bool:
        return name in self.param_definitions()

    def is_set(self, name: str) -> bool:
        return name in self._values

    def is_defined(self, name: str) -> bool:
        definitions = self.param_definitions()
        return name in self._values or (name in definitions and definitions[name].has_default)

    def get(self, name: str) -> Any:
        """Explicit value if set, otherwise the declared default."""
        if name in self._values:
            return self._values[name]
        definitions = self.param_definitions()
        if name not in definitions:
            raise ParameterError(f"{self.uid}: unknown parameter '{name}'", {"param": name, "stage": self.uid})
        param = definitions[name]
        if not param.has_default:
            raise ParameterError(f"{self.uid}: parameter '{name}' is not set and has no default",
                                 {"param": name, "stage": self.uid})
        return copy.deepcopy(param.default)

    def set(self, **kwargs) -> "Params":
        """Return a copy with the given parameters set."""
        clone = self._clone()
        clone._set(**kwargs)
        return clone

    def copy(self, extra: Optional[ParamMap] = None) -> "Params":
        """Copy keeping the uid; entries of ``extra`` addressed to this uid are applied."""
        clone = self._clone()
        if extra:
            own = {name: value for (uid, name), value in extra.items()
                   if uid == self.uid and self.has_param(name)}
            clone._set(**own)
        return clone

    def _clone(self) -> "Params":
        clone = copy.copy(self)
        clone._values = dict(self._values)
        return clone

    def explicit_params(self) -> Dict[str, Any]:
        return dict(self._values)

    def extract_param_map(self) -> Dict[str, Any]:
        """Every defined parameter with its effective value."""
        result = {}
        for name, param in self.param_definitions().items():
            if name in self._values:
                result[name] = self._values[name]
            elif param.has_default:
                result[name] = copy.deepcopy(param.default)
        return result

    def explain_params(self) -> str:
        lines = []
        for name, param in sorted(self.param_definitions().items()):
            default = f"default: {param.default!r}" if param.has_default else "no default"
            current = f", current: {self._values[name]!r}" if name in self._values else ""
            lines.append(f"{name}: {param.doc} ({default}{current})")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(uid={self.uid})"
