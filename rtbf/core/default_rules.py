"""Built-in deletion and replacement rules for platform and extension tables.

Tables that do not exist on a shard are skipped by the engine, so the list
can name tables of optional extensions (CheckUser, Flow, Moderation, ...).
"""

from __future__ import annotations

from rtbf.core.rules import Param, RuleRegistry

_NULL_IP = "0.0.0.0"


def register_default_rules(registry: RuleRegistry) -> None:
    # -- deletions ----------------------------------------------------
    registry.register_deletion_rule("block", {"bl_by_actor": Param.ACTOR_ID})
    registry.register_deletion_rule("block_target", {"bt_user": Param.USER_ID})
    registry.register_deletion_rule("user_groups", {"ug_user": Param.USER_ID})
    registry.register_deletion_rule("cu_changes", {"cuc_actor": Param.ACTOR_ID})
    registry.register_deletion_rule(
        "cu_log",
        {"cul_target_id": Param.USER_ID, "cul_type": ["useredits", "userips"]},
    )
    registry.register_deletion_rule("cu_log", {"cul_actor": Param.ACTOR_ID})

    # -- replacements -------------------------------------------------
    registry.register_replacement_rule(
        "recentchanges", {"rc_actor": Param.ACTOR_ID}, {"rc_ip": _NULL_IP}
    )
    registry.register_replacement_rule(
        "abuse_filter_log",
        {"afl_user_text": Param.OLD_NAME},
        {"afl_user_text": Param.NEW_NAME},
    )
    registry.register_replacement_rule(
        "ajaxpoll_vote", {"poll_actor": Param.ACTOR_ID}, {"poll_ip": _NULL_IP}
    )
    registry.register_replacement_rule(
        "Comments", {"Comment_actor": Param.ACTOR_ID}, {"Comment_IP": _NULL_IP}
    )
    registry.register_replacement_rule(
        "echo_event", {"event_agent_id": Param.USER_ID}, {"event_agent_ip": None}
    )
    registry.register_replacement_rule(
        "flow_tree_revision",
        {"tree_orig_user_id": Param.USER_ID},
        {"tree_orig_user_ip": None},
    )
    for prefix in ("rev", "rev_mod", "rev_edit"):
        registry.register_replacement_rule(
            "flow_revision",
            {f"{prefix}_user_id": Param.USER_ID},
            {f"{prefix}_user_ip": None},
        )
    moderation_scrub = {"mod_header_xff": "", "mod_header_ua": "", "mod_ip": _NULL_IP}
    registry.register_replacement_rule(
        "moderation", {"mod_user": Param.USER_ID}, moderation_scrub
    )
    registry.register_replacement_rule(
        "moderation",
        {"mod_user_text": Param.OLD_NAME},
        {**moderation_scrub, "mod_user_text": Param.NEW_NAME},
    )
    registry.register_replacement_rule(
        "report_reports",
        {"report_user_text": Param.OLD_NAME},
        {"report_user_text": Param.NEW_NAME},
    )
    registry.register_replacement_rule(
        "report_reports",
        {"report_handled_by_text": Param.OLD_NAME},
        {"report_handled_by_text": Param.NEW_NAME},
    )
    registry.register_replacement_rule(
        "Vote", {"vote_actor": Param.ACTOR_ID}, {"vote_ip": _NULL_IP}
    )
