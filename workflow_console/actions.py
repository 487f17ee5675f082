"""Helpers around the action catalog: option selections, story gating and job arguments."""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import ActionMeta, StorySummary

UNASSIGNED_OWNER = "Unassigned"

# Actions that operate on explicit story ids rather than an owner filter.
STORY_ID_ACTIONS = frozenset({"pull-to-notion", "update-requirements", "debug-notion"})
# Actions that never receive the owner filter.
NO_OWNER_ACTIONS = frozenset({"debug-notion"})

NO_OWNER_MESSAGE = "Select at least one story owner before running an action."
NO_STORIES_MESSAGE = "The current owner filter matches no stories; nothing to run."


def reconcile_option_selections(
    actions: Sequence[ActionMeta],
    previous: Dict[str, List[str]],
) -> Dict[str, List[str]]:
    """Carry option selections over to a freshly loaded action list.

    Known actions keep the selected ids that still exist; actions seen for the
    first time start from their default-selected options. Actions no longer
    offered are dropped.
    """
    selections: Dict[str, List[str]] = {}
    for action in actions:
        option_ids = set(action.option_ids())
        if action.id in previous:
            selections[action.id] = [item for item in previous[action.id] or [] if item in option_ids]
        else:
            selections[action.id] = [option.id for option in action.options if option.default_selected]
    return selections


def reconcile_selected_action(actions: Sequence[ActionMeta], selected: Optional[str]) -> Optional[str]:
    if not selected:
        return selected
    return selected if any(action.id == selected for action in actions) else None


def toggle_option(selections: Dict[str, List[str]], action_id: str, option_id: str) -> Dict[str, List[str]]:
    current = selections.get(action_id, [])
    if option_id in current:
        updated = [item for item in current if item != option_id]
    else:
        updated = current + [option_id]
    return {**selections, action_id: updated}


def story_owners(story: StorySummary) -> List[str]:
    owners = [owner.strip() for owner in story.owners]
    owners = [owner for owner in owners if owner]
    return owners or [UNASSIGNED_OWNER]


def filter_stories(stories: Sequence[StorySummary], owners: Iterable[str]) -> List[StorySummary]:
    """Stories with at least one selected owner; all stories when none is selected."""
    selected = set(owners)
    if not selected:
        return list(stories)
    return [story for story in stories if any(owner in selected for owner in story_owners(story))]


def reconcile_owners(selected: Sequence[str], known_owners: Iterable[str]) -> List[str]:
    valid = set(known_owners)
    return [owner for owner in selected if owner in valid]


def execute_blocked_reason(owners: Sequence[str], story_ids: Sequence[str]) -> Optional[str]:
    """Return why an action cannot run yet, or None when it can."""
    if not owners:
        return NO_OWNER_MESSAGE
    if not story_ids:
        return NO_STORIES_MESSAGE
    return None


def build_job_request(
    action: ActionMeta,
    selected_option_ids: Iterable[str],
    owners: Sequence[str],
    story_ids: Sequence[str],
) -> Tuple[List[str], Optional[List[str]]]:
    """Compute ``(args, story_ids)`` for ``create_job``.

    Arguments are the action defaults, then the arguments of selected options
    in catalog order, then ``--owner`` when the owner filter applies.
    """
    selected = set(selected_option_ids)
    option_args = [arg for option in action.options if option.id in selected for arg in option.args]
    needs_story_ids = action.id in STORY_ID_ACTIONS
    owner_args: List[str] = []
    if action.id not in NO_OWNER_ACTIONS and owners and (not needs_story_ids or not story_ids):
        owner_args = ["--owner", ",".join(owners)]
    args = list(action.default_args) + option_args + owner_args
    if needs_story_ids and story_ids:
        return args, list(story_ids)
    return args, None
