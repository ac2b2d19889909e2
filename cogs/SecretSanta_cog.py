"""
Secret Santa Cog - Roots of the Wild Art Gift Exchange

FEATURES:
- 🎁 Modal-based signup (character links, requests, members to avoid)
- 🎲 Constrained matching (avoid lists, swap repair, forced fallback)
- 👀 Moderator review of pending matches before anything is sent
- 💌 Assignment DMs with failure alerts in the mod log channel
- ⏰ Signup deadline closing and submission reminders

COMMANDS (Moderator):
- /ss match - Draw pending matches and review them
- /ss approve - Approve pending matches and DM every santa
- /ss resend - Re-send assignment DMs for approved matches
- /ss participants - View the main pool and substitutes
- /ss signups [open] - Open or close signups
- /ss deadlines [signup] [submission] - Set deadlines (YYYY-MM-DD)

COMMANDS (Admin):
- /ss blacklist add|remove|view

COMMANDS (Anyone):
- /ss signup [substitute] - Sign up (or update your signup)
- /ss withdraw - Leave the exchange
- /ss status - View your signup

DATA STORAGE:
- secret_santa_data.json - Participants, matches, settings
- secret_santa_data.backup - Backup if main save fails
"""

import asyncio
import datetime as dt
from pathlib import Path
from typing import List, Optional, Tuple

import disnake
from disnake.ext import commands

from .secret_santa_checks import (
    admin_check, is_moderator, mod_check, participant_check, resolve_member, safe_display_name,
)
from .secret_santa_matching import (
    MAX_ATTEMPTS, InsufficientParticipants, InternalInvariantViolation, match_all,
)
from .secret_santa_schedule import (
    DEADLINE_CHECK_INTERVAL, REMINDER_INTERVAL, STARTUP_DELAY,
    parse_deadline, reminder_due, signups_should_close,
)
from .secret_santa_storage import (
    DEFAULT_DATA_FILE, SUBSTITUTE_CHOICES, SecretSantaStore,
    new_participant_record, parse_datetime, utcnow,
)
from .secret_santa_views import (
    PendingMatchesView, SignupModal, build_assignment_embed, build_dm_failure_embed,
    build_participant_embed, build_reminder_embed, build_review_embed,
)

# Discord error code for "Cannot send messages to this user"
DMS_DISABLED = 50007


class SecretSantaCog(commands.Cog):
    """Secret Santa signup, matching and notifications"""

    def __init__(self, bot, store: Optional[SecretSantaStore] = None):
        self.bot = bot
        self.logger = bot.logger.getChild("santa")

        data_file = Path(self._config("SECRET_SANTA_DATA_FILE", DEFAULT_DATA_FILE))
        self.store = store or SecretSantaStore(data_file, self.logger.getChild("storage"))

        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._unloaded = False

        self.logger.info("Secret Santa cog initialized")

    def _config(self, name: str, default=None):
        try:
            value = getattr(self.bot.config, name)
        except AttributeError:
            return default
        return default if value in (None, "") else value

    @property
    def max_attempts(self) -> int:
        return int(self._config("MATCH_MAX_ATTEMPTS", MAX_ATTEMPTS))

    def _is_moderator(self, inter) -> bool:
        return is_moderator(resolve_member(inter), self._config("DISCORD_MODERATOR_ROLE_ID"))

    async def _reply(self, inter, content: str = None, embed: disnake.Embed = None, view: disnake.ui.View = None):
        """Ephemeral follow-up for an already deferred interaction"""
        kwargs = {"ephemeral": True}
        if content is not None:
            kwargs["content"] = content
        if embed is not None:
            kwargs["embed"] = embed
        if view is not None:
            kwargs["view"] = view
        await inter.followup.send(**kwargs)

    async def _log(self, message: str, level: str = "INFO"):
        if hasattr(self.bot, 'send_to_discord_log'):
            await self.bot.send_to_discord_log(message, level)

    # ============ LIFECYCLE ============

    async def cog_load(self):
        """Start background loops"""
        self._tasks = [
            asyncio.create_task(self._deadline_loop()),
            asyncio.create_task(self._reminder_loop()),
        ]
        self.logger.info("Secret Santa cog loaded")
        await self._log("🎁 Secret Santa cog loaded successfully", "SUCCESS")

    def cog_unload(self):
        """Cleanup cog (synchronous wrapper to prevent RuntimeWarning)"""
        if self._unloaded:
            return
        self._unloaded = True
        self.logger.info("Unloading Secret Santa cog...")
        self.store.save()
        for task in self._tasks:
            task.cancel()
        self.logger.info("Secret Santa cog unloaded")

    async def _deadline_loop(self):
        """Close signups once the signup deadline passes (never auto-matches)"""
        try:
            await asyncio.sleep(STARTUP_DELAY)
            while True:
                try:
                    await self._check_deadline()
                except Exception as e:
                    self.logger.error(f"Error in deadline check: {e}", exc_info=True)
                await asyncio.sleep(DEADLINE_CHECK_INTERVAL)
        except asyncio.CancelledError:
            pass

    async def _reminder_loop(self):
        try:
            await asyncio.sleep(STARTUP_DELAY)
            while True:
                try:
                    await self._send_reminders()
                except Exception as e:
                    self.logger.error(f"Error sending reminders: {e}", exc_info=True)
                await asyncio.sleep(REMINDER_INTERVAL)
        except asyncio.CancelledError:
            pass

    async def _check_deadline(self, now: Optional[dt.datetime] = None) -> bool:
        now = now or utcnow()
        async with self._lock:
            if not signups_should_close(self.store.get_settings(), now):
                return False
            self.store.update_settings(signups_open=False)
        self.logger.info("Signup deadline passed, closing signups (manual matching required)")
        await self._log("Secret Santa signups closed - signup deadline passed", "INFO")
        return True

    # ============ NOTIFICATIONS ============

    async def notify(self, user_id, embed: disnake.Embed) -> bool:
        """Send a DM embed. Raises on delivery failure so callers can report why."""
        user = await self.bot.fetch_user(int(user_id))
        await user.send(embed=embed)
        return True

    async def _send_dm_failure(self, santa: dict, giftee: dict, reason: str):
        channel_id = self._config("MOD_LOG_CHANNEL_ID") or self._config("DISCORD_LOG_CHANNEL_ID")
        if not channel_id:
            self.logger.warning("No logging channel configured for DM failures")
            return
        try:
            channel = self.bot.get_channel(int(channel_id)) or await self.bot.fetch_channel(int(channel_id))
            await channel.send(embed=build_dm_failure_embed(santa, giftee, reason))
        except Exception as e:
            self.logger.error(f"Error sending DM failure notification: {e}")

    async def _deliver_assignment(self, match: dict, deadline: Optional[dt.datetime]) -> bool:
        santa = self.store.get_participant(match["santa_id"])
        giftee = self.store.get_participant(match["giftee_id"])
        if not santa or not giftee:
            self.logger.error(
                f"Missing participant data for match: santa={match['santa_id']}, giftee={match['giftee_id']}"
            )
            return False

        try:
            await self.notify(santa["user_id"], build_assignment_embed(giftee, deadline))
        except disnake.HTTPException as e:
            if e.code == DMS_DISABLED:
                reason = "DMs disabled"
            else:
                reason = e.text or str(e)
            self.logger.error(f"Cannot send DM to {santa.get('username') or santa['user_id']}: {reason}")
            await self._send_dm_failure(santa, giftee, reason)
            return False
        except Exception as e:
            self.logger.error(f"Error sending DM to {santa.get('username') or santa['user_id']}: {e}")
            await self._send_dm_failure(santa, giftee, str(e) or "Unknown error")
            return False

        self.store.mark_assignment_received(santa["user_id"])
        self.logger.info(f"Sent assignment DM to {santa.get('username') or santa['user_id']}")
        return True

    async def _send_assignment_dms(self) -> Tuple[int, int]:
        """DM every approved santa their giftee. Returns (sent, failed)."""
        matches = self.store.get_approved_matches()
        if not matches:
            self.logger.warning("No approved matches found to send DMs")
            return 0, 0

        deadline = parse_datetime(self.store.get_settings().get("submission_deadline"))
        results = await asyncio.gather(
            *(self._deliver_assignment(m, deadline) for m in matches),
            return_exceptions=True,
        )
        sent = sum(1 for r in results if r is True)
        return sent, len(matches) - sent

    async def _send_reminders(self, now: Optional[dt.datetime] = None) -> int:
        settings = self.store.get_settings()
        days = reminder_due(settings, now or utcnow())
        if days is None:
            return 0
        self.store.update_settings(last_reminder_day=days)

        self.logger.info(f"Sending reminder: {days} days until submission deadline")
        deadline = parse_datetime(settings["submission_deadline"])
        embed = build_reminder_embed(days, deadline)

        sent = 0
        for record in self.store.load_participants():
            if not record.get("matched_with"):
                continue
            try:
                await self.notify(record["user_id"], embed)
                sent += 1
            except disnake.HTTPException as e:
                if e.code != DMS_DISABLED:
                    self.logger.error(f"Error sending reminder to {record['user_id']}: {e}")
            except Exception as e:
                self.logger.error(f"Error sending reminder to {record['user_id']}: {e}")
        return sent

    # ============ MATCHING ============

    def _names(self) -> dict:
        return {
            r["user_id"]: r.get("discord_name") or r.get("username") or r["user_id"]
            for r in self.store.load_participants()
        }

    async def _run_matching(self, inter):
        """Draw matches, park them as pending and show the review embed"""
        async with self._lock:
            pool = self.store.load_match_pool()
            try:
                # CPU-bound; keep the gateway heartbeat running
                result = await asyncio.to_thread(match_all, pool, max_attempts=self.max_attempts)
            except InsufficientParticipants as e:
                self.logger.warning(str(e))
                await self._reply(inter, content=f"❌ Need at least 2 participants to match (found {e.count})")
                return
            except InternalInvariantViolation as e:
                self.logger.error(f"Matching aborted - integrity check failed: {e}", exc_info=True)
                await self._reply(inter, content="❌ Matching failed an internal consistency check. Nothing was saved.")
                await self._log(f"Secret Santa matching aborted: {e}", "ERROR")
                return

            self.store.save_pending_matches(result.matches)
            pending = self.store.get_pending_matches()

        embed = build_review_embed(pending, self._names(), result)
        await self._reply(inter, embed=embed, view=PendingMatchesView())

        log_msg = f"Secret Santa matches drawn by {safe_display_name(inter.author)} - {len(result.matches)} pairs (pending approval)"
        if result.fallback_used:
            log_msg += f" - fallback used, {len(result.violations)} exclusion(s) ignored"
        if result.unmatched:
            log_msg += f", {len(result.unmatched)} unmatched"
        await self._log(log_msg, "WARNING" if result.fallback_used or result.unmatched else "SUCCESS")

    async def _approve_and_send(self, inter):
        count, problems = 0, []
        async with self._lock:
            if self.store.get_pending_matches():
                problems = self.store.pending_problems()
                if not problems:
                    count = self.store.approve_matches()
        if problems:
            self.logger.warning(f"Refused to approve a stale draw: {problems}")
            listing = "\n".join(f"• {p}" for p in problems[:15])
            await self._reply(
                inter,
                content=f"❌ The pending matches no longer fit the signups:\n{listing}\nRun `/ss match` to redraw.",
            )
            return
        if not count:
            await self._reply(inter, content="❌ No pending matches - use `/ss match` first")
            return

        sent, failed = await self._send_assignment_dms()
        msg = f"✅ {count} matches approved\n• DMs sent: {sent}/{count}"
        if failed:
            msg += f"\n⚠️ {failed} DM(s) failed - see the mod log channel"
        await self._reply(inter, content=msg)
        await self._log(
            f"Secret Santa matches approved by {safe_display_name(inter.author)} - {sent}/{count} DMs delivered",
            "WARNING" if failed else "SUCCESS",
        )

    # ============ SIGNUP ============

    async def _complete_signup(self, inter: disnake.ModalInteraction, data: dict):
        """Called by SignupModal once the form is submitted"""
        user_id = str(inter.author.id)
        temp = self.store.get_temp_signup_data(user_id)
        if temp is None:
            await self._reply(inter, content="⌛ Your signup session expired (30 minutes). Please run `/ss signup` again.")
            return

        if data["is_substitute"] != "only_sub" and not data["character_links"]:
            await self._reply(inter, content="❌ Please add at least one character link")
            return

        async with self._lock:
            existing = self.store.get_participant(user_id)
            if existing:
                record = {**existing, **data, "username": temp["username"], "discord_name": temp["discord_name"]}
            else:
                record = new_participant_record(user_id, temp["username"], temp["discord_name"], **data)
            self.store.save_participant(record)
            self.store.clear_temp_signup_data(user_id)

        verb = "updated" if existing else "received"
        await self._reply(inter, content=f"✅ Signup {verb}! 🎄", embed=build_participant_embed(record))
        self.logger.info(f"Signup {verb} for {temp['username']} ({user_id})")

    # ============ COMMANDS ============

    @commands.slash_command(name="ss")
    async def ss_root(self, inter: disnake.ApplicationCommandInteraction):
        """Secret Santa commands"""
        pass

    @ss_root.sub_command(name="signup", description="Sign up for the Roots Secret Santa")
    async def ss_signup(
        self,
        inter: disnake.ApplicationCommandInteraction,
        substitute: str = commands.Param(
            default="no", choices=list(SUBSTITUTE_CHOICES),
            description="yes = also a substitute, only_sub = substitute only",
        ),
    ):
        settings = self.store.get_settings()
        if not settings.get("signups_open"):
            await inter.response.send_message(content="❌ Signups are closed", ephemeral=True)
            return

        username = inter.author.name
        discord_name = safe_display_name(inter.author)
        if self.store.is_blacklisted(inter.author.id, username, discord_name):
            self.logger.info(f"Blocked signup from blacklisted user {username} ({inter.author.id})")
            await inter.response.send_message(content="❌ You are not able to join this Secret Santa", ephemeral=True)
            return

        self.store.set_temp_signup_data(inter.author.id, {"username": username, "discord_name": discord_name})
        existing = self.store.get_participant(inter.author.id)
        await inter.response.send_modal(SignupModal(is_substitute=substitute, existing=existing))

    @ss_root.sub_command(name="withdraw", description="Leave the Secret Santa")
    @participant_check()
    async def ss_withdraw(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        if self.store.get_settings().get("matches_approved"):
            await self._reply(inter, content="❌ Matches are already out - please contact a moderator to withdraw")
            return
        async with self._lock:
            had_pending = bool(self.store.get_pending_matches())
            self.store.remove_participant(inter.author.id)
            cleared = had_pending and not self.store.get_pending_matches()
        await self._reply(inter, content="👋 You've left the Secret Santa. Changed your mind? Run `/ss signup` again!")
        if cleared:
            await self._log(
                f"{safe_display_name(inter.author)} withdrew during match review - pending matches cleared, run `/ss match` again",
                "WARNING",
            )
        else:
            await self._log(f"{safe_display_name(inter.author)} withdrew from Secret Santa", "INFO")

    @ss_root.sub_command(name="status", description="View your Secret Santa signup")
    @participant_check()
    async def ss_status(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        record = self.store.get_participant(inter.author.id)
        await self._reply(inter, embed=build_participant_embed(record))

    @ss_root.sub_command(name="participants", description="View participants")
    @mod_check()
    async def ss_participants(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        pool = self.store.load_match_pool()
        subs = self.store.load_substitutes()
        if not pool and not subs:
            await self._reply(inter, content="❌ No participants yet")
            return

        embed = disnake.Embed(title=f"🎄 Participants ({len(pool)})", color=disnake.Color.green())
        lines = [f"• {p.label} (<@{p.id}>)" for p in pool[:30]]
        if len(pool) > 30:
            lines.append(f"... and {len(pool) - 30} more")
        embed.description = "\n".join(lines) or "*Nobody in the main pool*"
        if subs:
            embed.add_field(
                name=f"🔁 Substitutes ({len(subs)})",
                value="\n".join(f"• {s.get('discord_name')} ({s['is_substitute']})" for s in subs[:20]),
                inline=False,
            )
        await self._reply(inter, embed=embed)

    @ss_root.sub_command(name="match", description="Draw Secret Santa matches for review")
    @mod_check()
    async def ss_match(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        if self.store.get_settings().get("matches_approved"):
            self.logger.warning("Redrawing matches after a previous approval")
        await self._run_matching(inter)

    @ss_root.sub_command(name="approve", description="Approve pending matches and send assignments")
    @mod_check()
    async def ss_approve(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        await self._approve_and_send(inter)

    @ss_root.sub_command(name="resend", description="Re-send assignment DMs")
    @mod_check()
    async def ss_resend(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        sent, failed = await self._send_assignment_dms()
        if not sent and not failed:
            await self._reply(inter, content="❌ No approved matches")
            return
        await self._reply(inter, content=f"📨 Assignment DMs re-sent: {sent}/{sent + failed}")

    @ss_root.sub_command(name="signups", description="Open or close signups")
    @mod_check()
    async def ss_signups(
        self,
        inter: disnake.ApplicationCommandInteraction,
        is_open: bool = commands.Param(name="open", description="True to open, False to close"),
    ):
        await inter.response.defer(ephemeral=True)
        async with self._lock:
            self.store.update_settings(signups_open=is_open)
        await self._reply(inter, content=f"✅ Signups {'opened' if is_open else 'closed'}")
        await self._log(f"Secret Santa signups {'opened' if is_open else 'closed'} by {safe_display_name(inter.author)}")

    @ss_root.sub_command(name="deadlines", description="Set signup/submission deadlines (YYYY-MM-DD)")
    @mod_check()
    async def ss_deadlines(
        self,
        inter: disnake.ApplicationCommandInteraction,
        signup: str = commands.Param(default=None, description="Signup deadline, e.g. 2025-11-30"),
        submission: str = commands.Param(default=None, description="Submission deadline, e.g. 2026-01-14"),
    ):
        await inter.response.defer(ephemeral=True)
        changes = {}
        try:
            if signup:
                changes["signup_deadline"] = parse_deadline(signup)
            if submission:
                changes["submission_deadline"] = parse_deadline(submission)
        except ValueError:
            await self._reply(inter, content="❌ Dates must look like YYYY-MM-DD")
            return
        if not changes:
            await self._reply(inter, content="❌ Give at least one deadline")
            return

        async with self._lock:
            if "submission_deadline" in changes:
                # new schedule, so every reminder day is due again
                self.store.update_settings(last_reminder_day=None, **changes)
            else:
                self.store.update_settings(**changes)
        lines = [f"• {key.replace('_', ' ').title()}: <t:{int(value.timestamp())}:F>" for key, value in changes.items()]
        await self._reply(inter, content="✅ Deadlines updated\n" + "\n".join(lines))

    @ss_root.sub_command_group(name="blacklist", description="Manage the Secret Santa blacklist")
    async def ss_blacklist(self, inter: disnake.ApplicationCommandInteraction):
        pass

    @ss_blacklist.sub_command(name="add", description="Block a user from signing up")
    @admin_check()
    async def blacklist_add(
        self,
        inter: disnake.ApplicationCommandInteraction,
        name: str = commands.Param(description="User ID, username or display name"),
    ):
        await inter.response.defer(ephemeral=True)
        async with self._lock:
            added = self.store.add_to_blacklist(name.strip())
        await self._reply(inter, content=f"✅ `{name}` blacklisted" if added else f"ℹ️ `{name}` is already blacklisted")

    @ss_blacklist.sub_command(name="remove", description="Remove a user from the blacklist")
    @admin_check()
    async def blacklist_remove(
        self,
        inter: disnake.ApplicationCommandInteraction,
        name: str = commands.Param(description="Entry to remove"),
    ):
        await inter.response.defer(ephemeral=True)
        async with self._lock:
            removed = self.store.remove_from_blacklist(name.strip())
        await self._reply(inter, content=f"✅ `{name}` removed" if removed else f"❌ `{name}` is not on the blacklist")

    @ss_blacklist.sub_command(name="view", description="View the blacklist")
    @admin_check()
    async def blacklist_view(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)
        entries = self.store.get_settings().get("blacklisted_users") or []
        await self._reply(inter, content="🚫 Blacklist:\n" + ("\n".join(f"• {e}" for e in entries) or "*Empty*"))

    async def cog_slash_command_error(self, inter: disnake.ApplicationCommandInteraction, error: Exception):
        if isinstance(error, commands.CheckFailure):
            message = "❌ You don't have permission to use this command"
        else:
            self.logger.error(f"Command /{inter.application_command.qualified_name} failed: {error}", exc_info=error)
            message = "❌ Something went wrong - the moderators have been notified"
        try:
            if inter.response.is_done():
                await inter.followup.send(content=message, ephemeral=True)
            else:
                await inter.response.send_message(content=message, ephemeral=True)
        except disnake.HTTPException as e:
            self.logger.debug(f"Could not report command error: {e}")


def setup(bot):
    """Setup the cog"""
    bot.add_cog(SecretSantaCog(bot))
