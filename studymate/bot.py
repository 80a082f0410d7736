import asyncio
import discord
from discord import app_commands
from discord.ext import commands
import logging
import os
from typing import Dict, Optional

from .api_client import StudyMateClient
from .config_manager import ConfigManager
from .data_manager import DataManager
from .models import Phase, QuestionKind, Session, UserContext
from .quiz_controller import QuizController
from .quiz_engine import ExamEngine, ScoreKeeper

logger = logging.getLogger(__name__)

COLOR_GREEN = 0x00ff00
COLOR_ORANGE = 0xff6600
COLOR_RED = 0xff0000
COLOR_BLUE = 0x6699ff
COLOR_YELLOW = 0xffaa00

KIND_CHOICES = [
    app_commands.Choice(name="Short questions", value="short"),
    app_commands.Choice(name="Multiple choice", value="mcq"),
    app_commands.Choice(name="True / False", value="truefalse"),
]

DIFFICULTY_CHOICES = [
    app_commands.Choice(name="Easy", value="easy"),
    app_commands.Choice(name="Medium", value="medium"),
    app_commands.Choice(name="Hard", value="hard"),
]

KEY_HINTS = {
    QuestionKind.SHORT: "Reveal the answer, then move on with Next",
    QuestionKind.MULTIPLE_CHOICE: "Answer with A-D or 1-4 • Enter/Next to continue",
    QuestionKind.TRUE_FALSE: "Answer with T/F or 1/2 • Enter/Next to continue",
}


def _timer_style(remaining: int):
    """Colour, emoji and footer for the countdown."""
    if remaining > 5:
        return COLOR_GREEN, "⏱️", None
    if remaining > 2:
        return COLOR_ORANGE, "⚠️", "⚡ Time running out!"
    return COLOR_RED, "🚨", "🚨 Final seconds!"


def build_question_embed(session: Session) -> discord.Embed:
    """Render the current question of an in-progress session."""
    question = session.current_question
    color, timer_emoji, urgency = COLOR_BLUE, None, None
    if session.kind.is_timed:
        color, timer_emoji, urgency = _timer_style(session.remaining_seconds)

    embed = discord.Embed(
        title=f"🎯 Question {session.current_index + 1}/{session.total_questions}",
        description=question.prompt,
        color=color
    )

    selected = session.answers.get(session.current_index)
    if session.kind is QuestionKind.MULTIPLE_CHOICE:
        lines = [
            f"{'👉 ' if option.label == selected else ''}**{option.label}.** {option.text}"
            for option in question.options
        ]
        embed.add_field(name="📝 Options", value="\n".join(lines) or "-", inline=False)
    elif session.kind is QuestionKind.TRUE_FALSE:
        embed.add_field(
            name="📝 Your answer",
            value=selected.capitalize() if selected else "Not answered yet",
            inline=True
        )

    if session.kind.is_timed:
        remaining = session.remaining_seconds
        embed.add_field(
            name=f"{timer_emoji} Time Remaining",
            value=f"{remaining} second{'s' if remaining != 1 else ''}",
            inline=True
        )

    embed.add_field(
        name="📚 Topic",
        value=f"{session.topic} ({session.difficulty})",
        inline=True
    )

    if session.revealed:
        embed.add_field(name="✅ Answer", value=f"**{question.correct_answer}**", inline=False)
        if question.explanation:
            embed.add_field(name="💡 Explanation", value=question.explanation, inline=False)

    embed.set_footer(text=urgency or KEY_HINTS[session.kind])
    return embed


def build_results_embed(session: Session) -> discord.Embed:
    """Render the final score of a completed session."""
    result = session.result
    title = "🎉 Quiz Completed!" if result and result.celebrate else "📊 Quiz Completed"
    embed = discord.Embed(
        title=title,
        description=f"**{session.topic}** ({session.difficulty})",
        color=COLOR_GREEN if result and result.celebrate else COLOR_YELLOW
    )

    total = session.total_questions
    percentage = result.percentage if result else ScoreKeeper.percentage(session.score, total)
    embed.add_field(
        name="📊 Final Score",
        value=f"{session.score}/{total} ({percentage}%)",
        inline=False
    )

    lines = []
    for index, question in enumerate(session.questions):
        answer = session.answers.get(index)
        if ScoreKeeper.is_correct(answer, question):
            lines.append(f"{index + 1}. ✅ {answer}")
        else:
            lines.append(f"{index + 1}. ❌ {answer or 'no answer'} (correct: {question.correct_answer})")
    embed.add_field(name="📝 Answers", value="\n".join(lines)[:1024] or "-", inline=False)

    embed.set_footer(text="Use /exam to start a new quiz")
    return embed


def build_idle_embed(session: Session) -> discord.Embed:
    if session.loading:
        return discord.Embed(
            title="⏳ Generating questions...",
            description=f"Preparing {session.kind.label.lower()} on **{session.topic}**",
            color=COLOR_BLUE
        )
    return discord.Embed(
        title="📭 No quiz running",
        description="Use `/exam` to generate a new set of questions.",
        color=COLOR_BLUE
    )


def build_session_embed(session: Session) -> discord.Embed:
    if session.phase is Phase.IN_PROGRESS:
        return build_question_embed(session)
    if session.phase is Phase.COMPLETED:
        return build_results_embed(session)
    return build_idle_embed(session)


class ExamView(discord.ui.View):
    """Answer and navigation buttons for the current question."""

    def __init__(self, engine: ExamEngine):
        super().__init__(timeout=None)
        self.engine = engine
        session = engine.session
        # Clicks only act on the question this view was built for
        self.question_epoch = session.question_epoch
        question = session.current_question
        selected = session.answers.get(session.current_index)

        if session.kind is QuestionKind.MULTIPLE_CHOICE:
            for position, option in enumerate(question.options[:10]):
                self._add_button(
                    option.label,
                    discord.ButtonStyle.success if option.label == selected else discord.ButtonStyle.secondary,
                    position // 5,
                    lambda label=option.label: engine.select(label)
                )
        elif session.kind is QuestionKind.TRUE_FALSE:
            for value in ("true", "false"):
                self._add_button(
                    value.capitalize(),
                    discord.ButtonStyle.success if value == selected else discord.ButtonStyle.secondary,
                    0,
                    lambda value=value: engine.select(value)
                )

        if session.kind is not QuestionKind.MULTIPLE_CHOICE:
            self._add_button(
                "Hide answer" if session.revealed else "Show answer",
                discord.ButtonStyle.primary,
                2,
                engine.toggle_reveal
            )

        on_last = session.current_index >= session.total_questions - 1
        self._add_button("◀ Previous", discord.ButtonStyle.secondary, 3, engine.previous,
                         disabled=session.current_index == 0)
        self._add_button("Finish" if on_last and session.kind.is_timed else "Next ▶",
                         discord.ButtonStyle.primary, 3, engine.next)
        self._add_button("New quiz", discord.ButtonStyle.danger, 3, engine.start_new_quiz)

    def _add_button(self, label: str, style: discord.ButtonStyle, row: int, action, disabled: bool = False):
        button = discord.ui.Button(label=label, style=style, row=row, disabled=disabled)

        async def callback(interaction: discord.Interaction):
            try:
                await interaction.response.defer()
                if self.engine.session.question_epoch != self.question_epoch:
                    logger.info(
                        f"Ignoring stale button '{label}' for session {self.engine.session.session_id}",
                        extra={
                            'event_type': 'stale_button_ignored',
                            'session_id': self.engine.session.session_id,
                            'view_epoch': self.question_epoch,
                            'current_epoch': self.engine.session.question_epoch
                        }
                    )
                    return
                await action()
            except discord.HTTPException as e:
                logger.error(f"Failed to handle button '{label}': {e}")

        button.callback = callback
        self.add_item(button)


class ExamPresenter:
    """Keeps one channel's quiz message in sync with its session."""

    def __init__(self, channel):
        self.channel = channel
        self.message: Optional[discord.Message] = None
        self.engine: Optional[ExamEngine] = None
        self._layout_key = None
        self._render_lock = asyncio.Lock()

    async def reset(self) -> None:
        """Strip the buttons from the current message and post the next render as a fresh one."""
        async with self._render_lock:
            if self.message is not None:
                try:
                    await self.message.edit(view=None)
                except discord.HTTPException as e:
                    logger.error(f"Failed to retire quiz message in channel {self.channel.id}: {e}")
            self.message = None
            self._layout_key = None

    @staticmethod
    def layout_key(session: Session):
        """Buttons only need rebuilding when this key changes; ticks leave it alone."""
        return (
            session.phase,
            session.question_epoch,
            session.revealed,
            session.answers.get(session.current_index),
            session.loading,
        )

    async def on_change(self, session: Session) -> None:
        # One render at a time, so only the first one posts a message
        async with self._render_lock:
            kwargs = {'embed': build_session_embed(session)}
            key = self.layout_key(session)
            if key != self._layout_key:
                self._layout_key = key
                in_progress = session.phase is Phase.IN_PROGRESS and self.engine is not None
                kwargs['view'] = ExamView(self.engine) if in_progress else None

            try:
                if self.message is None:
                    if kwargs.get('view') is None:
                        kwargs.pop('view', None)
                    self.message = await self.channel.send(**kwargs)
                else:
                    await self.message.edit(**kwargs)
            except discord.HTTPException as e:
                # Log error but don't raise to avoid breaking the timer
                logger.error(f"Failed to update quiz message in channel {self.channel.id}: {e}")

    async def notify(self, level: str, message: str) -> None:
        icon = {'error': '❌', 'success': '✅'}.get(level, 'ℹ️')
        try:
            await self.channel.send(f"{icon} {message}")
        except discord.HTTPException as e:
            logger.error(f"Failed to send notice to channel {self.channel.id}: {e}")


class StudyMateBot(commands.Bot):
    """Discord bot running StudyMate exam quizzes"""

    def __init__(self, config=None):
        self.app_config = config or {}
        bot_config = self.app_config.get('bot', {})
        self.text_answers = bool(bot_config.get('text_answers', False))

        # Minimal intents for slash commands; typed answers need message content
        intents = discord.Intents.none()
        intents.guilds = True
        if self.text_answers:
            intents.guild_messages = True
            intents.message_content = True

        super().__init__(
            command_prefix=bot_config.get('command_prefix', '!'),
            intents=intents,
            help_command=None
        )

        self.config_manager: Optional[ConfigManager] = None
        self.api_client: Optional[StudyMateClient] = None
        self.quiz_controller: Optional[QuizController] = None
        self.presenters: Dict[int, ExamPresenter] = {}

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager()
            self.config_manager.apply_config(self.app_config)

            self.api_client = StudyMateClient(
                self.config_manager.get_api_base_url(),
                timeout=self.config_manager.get_request_timeout(),
                data_manager=DataManager()
            )
            self.quiz_controller = QuizController(self.api_client, self.config_manager)

            await self.setup_commands()

            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    async def setup_commands(self):
        """Register all slash commands"""

        @self.tree.command(name="help", description="Display available commands and their descriptions")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        @self.tree.command(name="exam", description="Generate exam questions on a topic and start a quiz")
        @app_commands.describe(
            topic="What the questions should be about",
            kind="Question format",
            difficulty="Question difficulty",
            count="Number of questions to generate"
        )
        @app_commands.choices(kind=KIND_CHOICES, difficulty=DIFFICULTY_CHOICES)
        async def exam_command(
            interaction: discord.Interaction,
            topic: str,
            kind: Optional[app_commands.Choice[str]] = None,
            difficulty: Optional[app_commands.Choice[str]] = None,
            count: Optional[int] = None
        ):
            await self.handle_exam(
                interaction,
                topic,
                kind.value if kind else "short",
                difficulty.value if difficulty else None,
                count
            )

        @self.tree.command(name="newquiz", description="Discard the current questions and start over")
        async def new_quiz_command(interaction: discord.Interaction):
            await self.handle_new_quiz(interaction)

        @self.tree.command(name="stop", description="Stop the current quiz session")
        async def stop_command(interaction: discord.Interaction):
            await self.handle_stop(interaction)

        @self.tree.command(name="status", description="Show current quiz status and progress")
        async def status_command(interaction: discord.Interaction):
            await self.handle_status(interaction)

        @self.tree.command(name="set_timer", description="Set the timer for timed questions (5-300 seconds)")
        async def set_timer_command(interaction: discord.Interaction, seconds: int):
            await self.handle_setting(interaction, self.config_manager.set_timer_duration(seconds))

        @self.tree.command(name="set_questions", description="Set how many questions to generate (1-20)")
        async def set_questions_command(interaction: discord.Interaction, number: int):
            await self.handle_setting(interaction, self.config_manager.set_question_count(number))

        logger.info("Slash commands registered successfully")

    async def on_ready(self):
        """Called when the bot has successfully connected to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        logger.info(f"Bot is in {len(self.guilds)} guilds")
        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors"""
        logger.error(f"An error occurred in event {event}", exc_info=True)

    async def on_message(self, message: discord.Message):
        """Route typed answers to the channel's quiz"""
        if not self.text_answers or message.author.bot or self.quiz_controller is None:
            return
        engine = self.quiz_controller.get_engine(message.channel.id)
        if engine is None or engine.session.phase is not Phase.IN_PROGRESS:
            return
        await engine.handle_key(message.content)

    async def close(self):
        if self.quiz_controller is not None:
            self.quiz_controller.shutdown()
        await super().close()

    def get_presenter(self, channel) -> ExamPresenter:
        presenter = self.presenters.get(channel.id)
        if presenter is None:
            presenter = ExamPresenter(channel)
            self.presenters[channel.id] = presenter
        return presenter

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        embed = discord.Embed(
            title="📚 StudyMate Exam Quiz",
            description="Generate exam-style questions on any topic and quiz yourself.",
            color=COLOR_BLUE
        )
        embed.add_field(
            name="🎯 Quiz",
            value=(
                "`/exam` - Generate questions and start a quiz\n"
                "`/newquiz` - Discard the current questions\n"
                "`/stop` - Stop the quiz in this channel\n"
                "`/status` - Show quiz progress"
            ),
            inline=False
        )
        embed.add_field(
            name="⚙️ Settings",
            value="`/set_timer` - Seconds per timed question\n`/set_questions` - Questions per quiz",
            inline=False
        )
        embed.add_field(
            name="🎮 Answering",
            value=(
                "Use the buttons under each question. Multiple choice and true/false questions "
                "are timed and move on automatically when time runs out."
                + ("\nYou can also type `A`-`D`, `1`-`4`, `T`/`F`, `next` or `back`." if self.text_answers else "")
            ),
            inline=False
        )
        embed.set_footer(text=self.config_manager.get_settings_summary().replace("\n", " "))
        try:
            await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error(f"Error in help command: {e}")

    async def handle_exam(
        self,
        interaction: discord.Interaction,
        topic: str,
        kind: str = "short",
        difficulty: Optional[str] = None,
        count: Optional[int] = None
    ):
        """Handle /exam command"""
        if count is not None and not ConfigManager.MIN_QUESTION_COUNT <= count <= ConfigManager.MAX_QUESTION_COUNT:
            await self.send_error_response(
                interaction,
                f"Question count must be between {ConfigManager.MIN_QUESTION_COUNT} "
                f"and {ConfigManager.MAX_QUESTION_COUNT}",
                "❌ Invalid Question Count"
            )
            return

        channel_id = interaction.channel_id
        presenter = self.get_presenter(interaction.channel)
        user = UserContext(
            user_id=str(interaction.user.id),
            display_name=getattr(interaction.user, 'display_name', None)
        )

        try:
            await interaction.response.defer(ephemeral=True, thinking=True)
            await presenter.reset()
            presenter.engine = self.quiz_controller.ensure_engine(
                channel_id, notify=presenter.notify, on_change=presenter.on_change
            )
            result = await self.quiz_controller.start_quiz(
                channel_id,
                topic,
                kind,
                user,
                difficulty=difficulty,
                count=count
            )

            if result['success']:
                await interaction.followup.send(result['user_message'], ephemeral=True)
            else:
                await self.send_error_response(interaction, result['user_message'], "❌ Quiz Start Failed")

        except discord.HTTPException as e:
            logger.error(f"Discord API error in exam command: {e}")
        except Exception as e:
            logger.error(f"Error in exam command: {e}", exc_info=True)
            await self.send_error_response(interaction, "Failed to start quiz", "❌ Quiz Start Error")

    async def handle_new_quiz(self, interaction: discord.Interaction):
        """Handle /newquiz command"""
        try:
            result = await self.quiz_controller.start_new_quiz(interaction.channel_id)
            if result['success']:
                await self.send_info_response(interaction, result['user_message'], "🆕 New Quiz")
            else:
                await self.send_error_response(interaction, result['user_message'])
        except Exception as e:
            logger.error(f"Error in newquiz command: {e}")
            await self.send_error_response(interaction, "Failed to reset quiz", "❌ Quiz Control Error")

    async def handle_stop(self, interaction: discord.Interaction):
        """Handle /stop command"""
        try:
            result = await self.quiz_controller.stop_quiz(interaction.channel_id)
            self.presenters.pop(interaction.channel_id, None)

            if result['success']:
                embed = discord.Embed(title="🛑 Quiz Stopped", color=COLOR_ORANGE)
                session_info = result['session_info']
                if session_info and session_info['total_questions']:
                    embed.description = f"**{session_info['topic']}** has been ended"
                    embed.add_field(
                        name="📊 Progress",
                        value=(
                            f"Question {session_info['current_question']}/{session_info['total_questions']}, "
                            f"{session_info['answered']} answered"
                        ),
                        inline=False
                    )
                embed.set_footer(text="Use /exam to begin a new quiz")
                await interaction.response.send_message(embed=embed)
            else:
                await self.send_info_response(interaction, result['user_message'], "ℹ️ No Active Quiz")

        except Exception as e:
            logger.error(f"Error in stop command: {e}")
            await self.send_error_response(interaction, "Failed to stop quiz", "❌ Quiz Control Error")

    async def handle_status(self, interaction: discord.Interaction):
        """Handle /status command"""
        try:
            progress = self.quiz_controller.get_session_progress(interaction.channel_id)
            if progress is None or progress['phase'] == Phase.IDLE.value and not progress['loading']:
                await self.send_info_response(
                    interaction,
                    "No quiz in this channel. Use `/exam` to start one.",
                    "ℹ️ No Active Quiz"
                )
                return

            kind = QuestionKind.from_value(progress['kind'])
            embed = discord.Embed(
                title="📊 Quiz Status",
                description=f"**{progress['topic']}** ({progress['difficulty']}) • {kind.label}",
                color=COLOR_BLUE
            )
            if progress['loading']:
                embed.add_field(name="⏳ State", value="Generating questions...", inline=False)
            elif progress['phase'] == Phase.COMPLETED.value:
                embed.add_field(
                    name="🏁 Finished",
                    value=f"Score {progress['score']}/{progress['total_questions']}",
                    inline=False
                )
            else:
                value = (
                    f"Question {progress['current_question']}/{progress['total_questions']}\n"
                    f"Answered: {progress['answered']}"
                )
                if progress['remaining_seconds'] is not None:
                    value += f"\nTime left: {progress['remaining_seconds']}s"
                embed.add_field(name="▶️ In Progress", value=value, inline=False)

            await interaction.response.send_message(embed=embed, ephemeral=True)

        except Exception as e:
            logger.error(f"Error in status command: {e}")
            await self.send_error_response(interaction, "Failed to get quiz status", "❌ Status Error")

    async def handle_setting(self, interaction: discord.Interaction, result: Dict):
        """Report the result of a settings command"""
        if result['success']:
            await self.send_info_response(interaction, result['user_message'], "⚙️ Settings Updated")
        else:
            await self.send_error_response(interaction, result['user_message'], "❌ Invalid Setting")

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send formatted error response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=COLOR_RED
            )
            embed.set_footer(text="If this error persists, try using /help for available commands")

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send error response to user")

    async def send_info_response(self, interaction: discord.Interaction, message: str, title: str = "ℹ️ Information"):
        """Send formatted info response to user"""
        try:
            embed = discord.Embed(
                title=title,
                description=message,
                color=COLOR_BLUE
            )

            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException:
            logger.error("Failed to send info response to user")


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = StudyMateBot(config)

    try:
        logger.info("Starting StudyMate bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()
