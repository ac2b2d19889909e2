"""
Secret Santa Checks Module - Permission and Validation Functions

RESPONSIBILITIES:
- Permission checks (mod/admin, signed-up participant)
- Validation decorators for commands
"""

from __future__ import annotations

import disnake
from disnake.ext import commands


def resolve_member(inter: "disnake.ApplicationCommandInteraction"):
    """Get the Member behind an interaction (None outside guilds)"""
    if not inter.guild:
        return None
    if isinstance(inter.author, disnake.Member):
        return inter.author
    return inter.guild.get_member(inter.author.id)


def is_moderator(member, mod_role_id) -> bool:
    if member is None:
        return False
    if member.guild_permissions.administrator:
        return True
    return bool(mod_role_id) and any(r.id == mod_role_id for r in member.roles)


def mod_check():
    """Check if user is mod or admin"""
    async def predicate(inter: "disnake.ApplicationCommandInteraction"):
        member = resolve_member(inter)
        try:
            mod_role_id = inter.bot.config.DISCORD_MODERATOR_ROLE_ID
        except AttributeError:
            mod_role_id = None
        return is_moderator(member, mod_role_id)

    return commands.check(predicate)


def admin_check():
    """Check if user is administrator (guild-only, fails in DMs)"""
    async def predicate(inter: "disnake.ApplicationCommandInteraction"):
        member = resolve_member(inter)
        return bool(member and member.guild_permissions.administrator)

    return commands.check(predicate)


def participant_check():
    """Check if user has signed up"""
    async def predicate(inter: "disnake.ApplicationCommandInteraction"):
        cog = inter.bot.get_cog("SecretSantaCog")
        if not cog:
            return False
        return cog.store.get_participant(inter.author.id) is not None

    return commands.check(predicate)


def safe_display_name(author: disnake.User | disnake.Member) -> str:
    """
    Safely get display_name from User or Member object.
    Returns display_name for Member, global name or name for User.
    """
    if isinstance(author, disnake.Member):
        return author.display_name
    return getattr(author, "global_name", None) or author.name
