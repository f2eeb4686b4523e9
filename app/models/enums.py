from enum import Enum


class Grade(str, Enum):
    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Explicit ordinals for comparisons and trends; never rely on declaration order
GRADE_ORDINAL = {
    Grade.NONE: 0,
    Grade.LOW: 1,
    Grade.MEDIUM: 2,
    Grade.HIGH: 3,
}

# Grades that signal a weakness worth reinforcing
WEAKNESS_GRADES = (Grade.LOW, Grade.MEDIUM, Grade.HIGH)


class Topic(str, Enum):
    SECUENCIA = "Secuencia"
    LOGICA = "Logica"
    ESTRUCTURAS = "Estructuras"
    VARIABLES = "Variables"
    PROCEDIMIENTOS = "Procedimientos"


TOPIC_LABELS = {
    Topic.SECUENCIA: "Secuencia y Lógica Básica",
    Topic.LOGICA: "Lógica Proposicional",
    Topic.ESTRUCTURAS: "Estructuras de Control",
    Topic.VARIABLES: "Variables",
    Topic.PROCEDIMIENTOS: "Procedimientos",
}


class EvidenceSource(str, Enum):
    GAMEPLAY = "Gameplay"
    REINFORCEMENT_SESSION = "ReinforcementSession"


class SessionState(str, Enum):
    PENDIENTE = "Pendiente"
    COMPLETADA = "Completada"
    NO_REALIZADA = "No_realizada"
    INCOMPLETA = "Incompleta"
    CANCELADA = "Cancelada"


TERMINAL_STATES = (
    SessionState.COMPLETADA,
    SessionState.NO_REALIZADA,
    SessionState.INCOMPLETA,
    SessionState.CANCELADA,
)


class SessionOrigin(str, Enum):
    SYSTEM = "System"
    TEACHER = "Teacher"


class Tier(str, Enum):
    TOTAL = "Total improvement"
    SIGNIFICANT = "Significant improvement"
    SLIGHT = "Slight improvement"
    NONE = "No improvement"
