"""Shared constant values for the Animikii runtime."""

DYN = "dyn"

INTEGER_RANGES = {
    "i8": (-(2**7), 2**7 - 1),
    "i16": (-(2**15), 2**15 - 1),
    "i32": (-(2**31), 2**31 - 1),
    "i64": (-(2**63), 2**63 - 1),
    "u8": (0, 2**8 - 1),
    "u16": (0, 2**16 - 1),
    "u32": (0, 2**32 - 1),
    "u64": (0, 2**64 - 1),
}

FLOAT_TYPES = ["f32", "f64"]

F32_MAX = 3.4028234663852886e38

SCALAR_TYPES = ["bool", "str", "unit"]
CONTAINER_TYPES = ["vec", "map"]

STATIC_TYPES = list(INTEGER_RANGES) + FLOAT_TYPES + SCALAR_TYPES + CONTAINER_TYPES

# Implicit widenings: key widens to every type in its set.
WIDENINGS = {
    "i8": {"i16", "i32", "i64"},
    "i16": {"i32", "i64"},
    "i32": {"i64"},
    "i64": set(),
    "u8": {"u16", "u32", "u64", "i16", "i32", "i64"},
    "u16": {"u32", "u64", "i32", "i64"},
    "u32": {"u64", "i64"},
    "u64": set(),
    "f32": {"f64"},
    "f64": set(),
}
for _int_type in INTEGER_RANGES:
    WIDENINGS[_int_type] |= set(FLOAT_TYPES)

ARITHMETIC_OPS = ["+", "-", "*", "/", "%"]
COMPARISON_OPS = ["==", "!=", "<", ">", "<=", ">="]
LOGICAL_OPS = ["&&", "||"]
UNARY_OPS = ["-", "!"]
INDEX_OP = "[]"

# Declared sigils and attributes, normalised to wrapper kinds.
QUALIFIERS = {
    "~": "unique",
    "unique": "unique",
    "@": "shared",
    "shared": "shared",
    "#weak": "weak",
    "weak": "weak",
    "#sync": "sync",
    "sync": "sync",
    "#own": "own",
    "own": "own",
}

TASK_STATES = ["created", "ready", "running", "suspended", "completed", "cancelled", "faulted"]

TASK_TRANSITIONS = {
    "created": {"ready", "cancelled"},
    "ready": {"running", "cancelled"},
    "running": {"suspended", "completed", "cancelled", "faulted"},
    "suspended": {"ready"},
    "completed": set(),
    "cancelled": set(),
    "faulted": set(),
}

SUSPEND_REASONS = ["await", "join", "channel_send", "channel_recv", "sync_lock", "checkpoint"]

ACTOR_STATUSES = ["running", "faulted", "stopping", "stopped"]

# Ordered weakest to strongest; a bound effect takes the stronger grade.
EFFECT_GRADES = ["pure", "state", "io"]

LOGBOOK_FILE = "animikii.logbook.jsonl"
EXIT_RUNTIME_DEFECT = 70

__all__ = [
    "ACTOR_STATUSES",
    "ARITHMETIC_OPS",
    "COMPARISON_OPS",
    "CONTAINER_TYPES",
    "DYN",
    "EFFECT_GRADES",
    "EXIT_RUNTIME_DEFECT",
    "F32_MAX",
    "FLOAT_TYPES",
    "INDEX_OP",
    "INTEGER_RANGES",
    "LOGBOOK_FILE",
    "LOGICAL_OPS",
    "QUALIFIERS",
    "SCALAR_TYPES",
    "STATIC_TYPES",
    "SUSPEND_REASONS",
    "TASK_STATES",
    "TASK_TRANSITIONS",
    "UNARY_OPS",
    "WIDENINGS",
]
