"""Chat command matching.

Free text is resolved to exactly one :class:`CommandKind`. Keywords match on
whole words (or whole multi-word phrases) after accent folding, and kinds are
tried in a fixed priority order; text that matches nothing is treated as a
meal description to analyse.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from mealgate.core.plans import ACTION_ANALYSIS, ACTION_DIET


class CommandKind(str, Enum):
    DIET = "diet"
    MENU = "menu"
    RECIPE = "recipe"
    ANALYZE = "analyze"
    PROGRESS = "progress"
    HELP = "help"
    SUBSCRIPTION = "subscription"
    REFERRAL = "referral"
    REMINDER = "reminder"
    MEAL_DESCRIPTION = "meal_description"


class DietGoal(str, Enum):
    WEIGHT_LOSS = "weight_loss"
    MUSCLE_GAIN = "muscle_gain"
    MAINTENANCE = "maintenance"


# Ordered: earlier kinds win when a message mentions several.
_KEYWORDS: tuple[tuple[CommandKind, tuple[str, ...]], ...] = (
    (CommandKind.HELP, ("ajuda", "help", "comandos", "tutorial")),
    (CommandKind.SUBSCRIPTION, ("assinatura", "plano", "upgrade", "premium", "cancelar", "subscription")),
    (CommandKind.REFERRAL, ("convidar", "referencia", "indicar", "amigo", "invite", "referral")),
    (CommandKind.REMINDER, ("lembrete", "notificacao", "alerta", "reminder")),
    (CommandKind.PROGRESS, ("progresso", "evolucao", "resultados", "estatisticas", "progress")),
    (CommandKind.DIET, ("dieta", "diet", "emagrecer", "perder peso", "ganhar massa", "massa muscular")),
    (CommandKind.MENU, ("cardapio", "menu")),
    (CommandKind.RECIPE, ("receita", "receitas", "recipe")),
    (CommandKind.ANALYZE, ("analisar", "calorias", "nutrientes", "saudavel", "analyze", "calories")),
)

COMMAND_ACTIONS: dict[CommandKind, str | None] = {
    CommandKind.DIET: ACTION_DIET,
    CommandKind.MENU: ACTION_DIET,
    CommandKind.RECIPE: None,
    CommandKind.ANALYZE: ACTION_ANALYSIS,
    CommandKind.PROGRESS: None,
    CommandKind.HELP: None,
    CommandKind.SUBSCRIPTION: None,
    CommandKind.REFERRAL: None,
    CommandKind.REMINDER: None,
    CommandKind.MEAL_DESCRIPTION: ACTION_ANALYSIS,
}

_GOALS: tuple[tuple[DietGoal, tuple[str, ...]], ...] = (
    (DietGoal.WEIGHT_LOSS, ("emagrecer", "perder peso", "weight loss")),
    (DietGoal.MUSCLE_GAIN, ("ganhar massa", "massa muscular", "hipertrofia", "muscle")),
)


@dataclass(frozen=True, slots=True)
class Command:
    kind: CommandKind
    text: str
    keyword: str | None = None
    goal: DietGoal | None = None

    @property
    def action(self) -> str | None:
        """Metered action consumed by this command, if any."""
        return COMMAND_ACTIONS[self.kind]


def normalise(text: str) -> str:
    folded = unicodedata.normalize("NFKD", text.lower())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return " ".join(re.findall(r"[a-z0-9]+", folded))


def _contains_phrase(normalised: str, phrase: str) -> bool:
    return re.search(rf"(?<!\S){re.escape(phrase)}(?!\S)", normalised) is not None


def _find_goal(normalised: str) -> DietGoal:
    for goal, phrases in _GOALS:
        if any(_contains_phrase(normalised, phrase) for phrase in phrases):
            return goal
    return DietGoal.MAINTENANCE


def match_command(text: str) -> Command:
    """Resolve ``text`` to a command; unmatched text is a meal description."""
    normalised = normalise(text)
    for kind, phrases in _KEYWORDS:
        for phrase in phrases:
            if _contains_phrase(normalised, phrase):
                goal = _find_goal(normalised) if kind is CommandKind.DIET else None
                return Command(kind=kind, text=normalised, keyword=phrase, goal=goal)
    return Command(kind=CommandKind.MEAL_DESCRIPTION, text=normalised)


__all__ = ["COMMAND_ACTIONS", "Command", "CommandKind", "DietGoal", "match_command", "normalise"]
