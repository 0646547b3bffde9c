import pytest

from mealgate.core.plans import ACTION_ANALYSIS, ACTION_DIET
from mealgate.services.commands import COMMAND_ACTIONS, CommandKind, DietGoal, match_command, normalise


def test_normalise_folds_accents_and_punctuation():
    assert normalise("  Cardápio, por FAVOR! ") == "cardapio por favor"


@pytest.mark.parametrize(
    ("text", "kind"),
    [
        ("Quero uma dieta", CommandKind.DIET),
        ("me manda o cardápio da semana", CommandKind.MENU),
        ("tem alguma receita de bolo?", CommandKind.RECIPE),
        ("quantas calorias tem isso", CommandKind.ANALYZE),
        ("ajuda", CommandKind.HELP),
        ("quero cancelar meu plano", CommandKind.SUBSCRIPTION),
        ("como convidar um amigo", CommandKind.REFERRAL),
        ("criar lembrete de água", CommandKind.REMINDER),
        ("ver meu progresso", CommandKind.PROGRESS),
    ],
)
def test_keywords_resolve_to_one_command(text, kind):
    assert match_command(text).kind is kind


def test_keywords_match_whole_words_only():
    # "menu" inside "menudo" and "dieta" inside "dietetico" are not commands.
    assert match_command("comi menudo").kind is CommandKind.MEAL_DESCRIPTION
    assert match_command("refrigerante dietetico").kind is CommandKind.MEAL_DESCRIPTION


def test_unmatched_text_is_a_meal_description():
    command = match_command("Arroz, feijão e frango grelhado")
    assert command.kind is CommandKind.MEAL_DESCRIPTION
    assert command.action == ACTION_ANALYSIS


def test_priority_order_breaks_ties():
    # Mentions both the help and diet keywords; help is tried first.
    assert match_command("ajuda com a dieta").kind is CommandKind.HELP


def test_diet_goal_detection():
    assert match_command("dieta para emagrecer").goal is DietGoal.WEIGHT_LOSS
    assert match_command("quero ganhar massa").goal is DietGoal.MUSCLE_GAIN
    assert match_command("dieta").goal is DietGoal.MAINTENANCE


def test_metered_actions_per_command():
    assert match_command("dieta").action == ACTION_DIET
    assert match_command("cardapio").action == ACTION_DIET
    assert match_command("receita").action is None


def test_every_command_kind_has_an_action_mapping():
    assert set(COMMAND_ACTIONS) == set(CommandKind)
