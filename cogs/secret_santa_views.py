"""
Secret Santa Views Module - Discord UI Components

RESPONSIBILITIES:
- Embeds (assignment, reminder, DM failure, match review)
- Signup modal
- Pending-match review buttons (approve / reshuffle)

ISOLATION:
- Discord UI components only
- Minimal coupling (uses cog lookup for functionality)
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Dict, List, Optional

import disnake

from .secret_santa_matching import MatchResult

BORDER_IMAGE = "https://storage.googleapis.com/tinglebot/Graphics/border.png"
ROOTS_COLOR = disnake.Color(0x00AE86)
DIVIDER = "━" * 40

FIELD_LIMIT = 1024
DESCRIPTION_LIMIT = 4096


def parse_list_field(text: Optional[str]) -> List[str]:
    """Split modal text on newlines/commas, dropping blanks and bullet marks"""
    if not text:
        return []
    items = []
    for chunk in re.split(r"[\n,]", text):
        item = chunk.strip().lstrip("•-* ").strip()
        if item:
            items.append(item)
    return items


def _clip(text: str, limit: int = FIELD_LIMIT) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _timestamp(value: Optional[dt.datetime], style: str = "F") -> str:
    if value is None:
        return "*Not set*"
    return f"<t:{int(value.timestamp())}:{style}>"


def build_assignment_embed(giftee: dict, submission_deadline: Optional[dt.datetime]) -> disnake.Embed:
    """DM sent to a santa describing their giftee"""
    embed = disnake.Embed(
        title="🎁 Roots Secret Santa Assignment!",
        description=(
            "**You have been assigned a giftee for the Roots Secret Santa!**\n\n"
            "Use the information below to create art for your giftee.\n\n"
            f"{DIVIDER}"
        ),
        color=ROOTS_COLOR,
        timestamp=dt.datetime.now(dt.timezone.utc),
    )
    embed.set_image(url=BORDER_IMAGE)

    links = giftee.get("character_links") or []
    embed.add_field(name="👤 Your Giftee", value=f"**{giftee.get('discord_name') or giftee.get('username')}**", inline=False)
    embed.add_field(
        name="🔗 Character Links",
        value=_clip("\n".join(f"• {link}" for link in links)) if links else "*None*",
        inline=False,
    )

    optional = (
        ("✨ Preferred Character Requests", giftee.get("preferred_character_requests")),
        ("💭 Other Character Requests", giftee.get("other_character_requests")),
        ("⚠️ Content to Avoid", giftee.get("content_to_avoid")),
    )
    for name, value in optional:
        if value:
            embed.add_field(name=name, value=_clip(value), inline=False)

    avoid = giftee.get("members_to_avoid") or []
    if avoid:
        embed.add_field(name="🚫 Members to Avoid", value=_clip("\n".join(f"• {n}" for n in avoid)), inline=False)

    embed.add_field(
        name="📅 Important Dates",
        value=(
            f"**Submission Deadline:**\n{_timestamp(submission_deadline, 'R')} • {_timestamp(submission_deadline)}\n"
            "*11:59 PM EST*\n\n"
            "Send your gift art **DIRECTLY** to your giftee between **December 24th** "
            "and **January 14th at 11:59 PM EST**!\n"
            "If you can't make the deadline, inform us by the **first week of January**."
        ),
        inline=False,
    )
    embed.add_field(
        name="🎨 Gift Requirements",
        value=(
            "**Art Gifts:**\n• At least one requested character\n• Lined with flat colors\n"
            "• Full body or bust, background optional\n• Intentional stylization is acceptable"
        ),
        inline=False,
    )
    embed.add_field(
        name="🔒 Keep It Secret!",
        value="**Don't tell anyone who you are drawing for - it's a secret!** 🤫",
        inline=False,
    )
    return embed


def build_reminder_embed(days_left: int, submission_deadline: dt.datetime) -> disnake.Embed:
    embed = disnake.Embed(
        title="⏰ Roots Secret Santa Reminder",
        description=f"**{days_left} day{'s' if days_left != 1 else ''} until the submission deadline!**",
        color=ROOTS_COLOR,
        timestamp=dt.datetime.now(dt.timezone.utc),
    )
    embed.set_image(url=BORDER_IMAGE)
    embed.add_field(name="📅 Deadline", value=_timestamp(submission_deadline), inline=False)
    embed.add_field(
        name="💡 Remember",
        value=(
            "• Send your gift art directly to your giftee\n"
            "• If you can't make the deadline, inform us by the first week of January\n"
            "• Keep it secret!"
        ),
        inline=False,
    )
    return embed


def build_dm_failure_embed(santa: dict, giftee: dict, reason: str) -> disnake.Embed:
    """Posted to the mod log channel when an assignment DM bounces"""
    embed = disnake.Embed(
        title="⚠️ Secret Santa DM Failure",
        description="**Could not send assignment DM to Secret Santa**",
        color=disnake.Color.red(),
        timestamp=dt.datetime.now(dt.timezone.utc),
    )
    embed.set_image(url=BORDER_IMAGE)
    embed.add_field(name="🎅 Secret Santa", value=f"{santa.get('discord_name')} ({santa.get('username')})", inline=False)
    embed.add_field(name="🎁 Giftee", value=f"{giftee.get('discord_name')} ({giftee.get('username')})", inline=False)
    embed.add_field(name="❌ Reason", value=_clip(reason), inline=False)
    embed.add_field(name="💡 Action Required", value="Please manually DM this user their assignment.", inline=False)
    return embed


def build_review_embed(pending: List[dict], names: Dict[str, str], result: Optional[MatchResult] = None) -> disnake.Embed:
    """
    Moderator preview of pending matches.

    Forced (fallback) pairs are flagged, and exclusion violations and
    unmatched reasons get their own fields so they can be fixed by hand.
    """
    fallback = bool(result and result.fallback_used)
    embed = disnake.Embed(
        title=f"🎄 Pending Matches ({len(pending)})",
        color=disnake.Color.orange() if fallback else disnake.Color.green(),
    )

    lines = []
    for match in pending:
        santa = names.get(match["santa_id"], match["santa_id"])
        giftee = names.get(match["giftee_id"], match["giftee_id"])
        flag = " ⚠️" if match.get("forced") else ""
        lines.append(f"• {santa} → {giftee}{flag}")
    embed.description = _clip("\n".join(lines) or "*No matches*", DESCRIPTION_LIMIT)

    if result is not None:
        embed.add_field(
            name="📊 Run",
            value=f"Attempts: {result.attempts} • Swaps: {result.swaps} • Fallback: {'yes' if fallback else 'no'}",
            inline=False,
        )
        if result.violations:
            embed.add_field(
                name="⚠️ Exclusions Ignored",
                value=_clip("\n".join(f"• {v}" for v in result.violations)),
                inline=False,
            )
        if result.unmatched:
            embed.add_field(
                name="❌ Unmatched",
                value=_clip("\n".join(f"• {u.participant.label}: {u.reason}" for u in result.unmatched)),
                inline=False,
            )
        elif fallback and result.diagnostics:
            embed.add_field(
                name="🔍 Why Fallback Was Needed",
                value=_clip("\n".join(
                    f"• {names.get(pid, pid)}: {reason}" for pid, reason in result.diagnostics.items()
                )),
                inline=False,
            )

    embed.set_footer(text="Approve to send assignment DMs, or reshuffle for a new draw.")
    return embed


def build_participant_embed(record: dict) -> disnake.Embed:
    embed = disnake.Embed(title="🎄 Your Secret Santa Signup", color=ROOTS_COLOR)
    links = record.get("character_links") or []
    embed.add_field(name="🔗 Character Links", value=_clip("\n".join(links)) if links else "*None*", inline=False)
    avoid = record.get("members_to_avoid") or []
    embed.add_field(name="🚫 Members to Avoid", value=_clip(", ".join(avoid)) if avoid else "*None*", inline=False)
    embed.add_field(name="🔁 Substitute", value=record.get("is_substitute", "no"), inline=True)
    embed.add_field(name="🎁 Assignment", value="Received" if record.get("received_assignment") else "Not yet", inline=True)
    return embed


class SignupModal(disnake.ui.Modal):
    """Signup form; the submitted data is parked as temp signup data until saved"""

    def __init__(self, is_substitute: str = "no", existing: Optional[dict] = None):
        existing = existing or {}
        components = [
            disnake.ui.TextInput(
                label="Character Links (one per line)",
                custom_id="character_links",
                style=disnake.TextInputStyle.paragraph,
                value="\n".join(existing.get("character_links") or []) or None,
                max_length=1000,
                required=is_substitute != "only_sub",
            ),
            disnake.ui.TextInput(
                label="Preferred Character Requests",
                custom_id="preferred_character_requests",
                style=disnake.TextInputStyle.paragraph,
                value=existing.get("preferred_character_requests") or None,
                max_length=1000,
                required=False,
            ),
            disnake.ui.TextInput(
                label="Other Character Requests",
                custom_id="other_character_requests",
                style=disnake.TextInputStyle.paragraph,
                value=existing.get("other_character_requests") or None,
                max_length=1000,
                required=False,
            ),
            disnake.ui.TextInput(
                label="Content to Avoid",
                custom_id="content_to_avoid",
                style=disnake.TextInputStyle.paragraph,
                value=existing.get("content_to_avoid") or None,
                max_length=1000,
                required=False,
            ),
            disnake.ui.TextInput(
                label="Members to Avoid (comma separated)",
                custom_id="members_to_avoid",
                style=disnake.TextInputStyle.short,
                value=", ".join(existing.get("members_to_avoid") or []) or None,
                max_length=400,
                required=False,
            ),
        ]
        super().__init__(title="🎁 Roots Secret Santa Signup", components=components)
        self.is_substitute = is_substitute

    async def callback(self, inter: disnake.ModalInteraction):
        await inter.response.defer(ephemeral=True)

        cog = inter.bot.get_cog("SecretSantaCog")
        if not cog:
            await inter.followup.send(content="❌ Secret Santa system not available", ephemeral=True)
            return

        values = inter.text_values
        data = {
            "character_links": parse_list_field(values.get("character_links")),
            "preferred_character_requests": (values.get("preferred_character_requests") or "").strip(),
            "other_character_requests": (values.get("other_character_requests") or "").strip(),
            "content_to_avoid": (values.get("content_to_avoid") or "").strip(),
            "members_to_avoid": parse_list_field(values.get("members_to_avoid")),
            "is_substitute": self.is_substitute,
        }
        await cog._complete_signup(inter, data)


class PendingMatchesView(disnake.ui.View):
    """Approve / reshuffle buttons under the match review embed"""

    def __init__(self, timeout: float = 900):
        super().__init__(timeout=timeout)

    @disnake.ui.button(label="Approve & Send", style=disnake.ButtonStyle.success, emoji="✅")
    async def approve_button(self, button: disnake.ui.Button, inter: disnake.MessageInteraction):
        cog = inter.bot.get_cog("SecretSantaCog")
        if not cog or not cog._is_moderator(inter):
            await inter.response.send_message(content="❌ Only moderators can approve matches", ephemeral=True)
            return
        await inter.response.defer(ephemeral=True)
        self.stop()
        await cog._approve_and_send(inter)

    @disnake.ui.button(label="Reshuffle", style=disnake.ButtonStyle.secondary, emoji="🎲")
    async def reshuffle_button(self, button: disnake.ui.Button, inter: disnake.MessageInteraction):
        cog = inter.bot.get_cog("SecretSantaCog")
        if not cog or not cog._is_moderator(inter):
            await inter.response.send_message(content="❌ Only moderators can reshuffle matches", ephemeral=True)
            return
        await inter.response.defer(ephemeral=True)
        self.stop()
        await cog._run_matching(inter)
