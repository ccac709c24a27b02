# services/log_parsers.py
"""
Log parsers for Arma Reforger console logs.
Parses console.log lines into typed domain events.

Reforger console lines look like:
    12:34:56.789 SCRIPT       : <message>
    12:34:56.789  DEFAULT      : <message>
    12:34:56.789 BACKEND   (E): <message>

Rules are tried in order against the message part; the first match wins and
lines matching no rule are dropped.
"""

import importlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from services.events import Event, EventBus

logger = logging.getLogger(__name__)

# Vote kick starts older than this are dropped from the correlation buffer
VOTE_KICK_WINDOW_MS = 1_800_000

CHAT_CHANNELS = {
    0: "Global",
    1: "Faction",
    2: "Group",
    3: "Vehicle",
    4: "Local",
}

LINE_PREFIX_PATTERN = re.compile(
    r'^\s*(?P<time>\d{1,2}:\d{2}:\d{2}(?:\.\d{1,3})?)\s+'
    r'(?P<category>[A-Za-z_]+)\s*(?:\([A-Z]\))?\s*:\s?(?P<message>.*)$'
)


@dataclass(frozen=True, kw_only=True)
class DomainEvent(Event):
    """Event derived from one log line."""
    time: Optional[str] = None  # HH:MM:SS.mmm from the line prefix
    raw_line: str = ""


@dataclass(frozen=True, kw_only=True)
class PlayerJoined(DomainEvent):
    """BattlEye reported a player connecting."""
    player_number: int
    player_name: str
    player_ip: str
    player_port: int


@dataclass(frozen=True, kw_only=True)
class PlayerGuid(DomainEvent):
    """BattlEye reported a player's BE GUID."""
    player_number: int
    player_name: str
    be_guid: str


@dataclass(frozen=True, kw_only=True)
class PlayerUpdate(DomainEvent):
    """Game reported player id and identity for a name."""
    player_id: int
    player_name: str
    player_uid: str


@dataclass(frozen=True, kw_only=True)
class ChatMessage(DomainEvent):
    channel_id: int
    channel_type: str
    player_id: int
    player_name: str
    message: str


@dataclass(frozen=True, kw_only=True)
class PlayerKilled(DomainEvent):
    """ServerAdminTools kill report. killer_name is the instigator."""
    victim_name: str
    killer_name: str
    friendly: bool = False


@dataclass(frozen=True, kw_only=True)
class FriendlyFire(DomainEvent):
    """Team kill, published by the server orchestrator right after its PlayerKilled."""
    victim_name: str
    killer_name: str


@dataclass(frozen=True, kw_only=True)
class VoteKickStart(DomainEvent):
    """
    First approval of a kick vote.

    Names are empty when parsed; the server orchestrator fills them in from
    its player roster before republishing.
    """
    vote_offender_id: int
    vote_victim_id: int
    vote_count: int = 1
    vote_total: Optional[int] = None
    vote_offender_name: Optional[str] = None
    vote_victim_name: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class VoteKickVictim(DomainEvent):
    """A kick vote succeeded. vote_offender_id is set when the start was seen."""
    vote_victim_name: str
    vote_victim_id: int
    vote_offender_id: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class BaseCapture(DomainEvent):
    faction: str
    base: str


@dataclass(frozen=True, kw_only=True)
class AdminAction(DomainEvent):
    action: str
    admin_name: str
    player_name: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class GameStart(DomainEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class GameEnd(DomainEvent):
    reason: Optional[str] = None
    winner: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ServerHealth(DomainEvent):
    """Rolling server performance snapshot."""
    fps: Optional[float] = None
    memory: Optional[int] = None  # kB
    player: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class ApplicationHang(DomainEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class GmToolsStatus(DomainEvent):
    """Player entered or left Game Master mode."""
    player_name: str
    player_id: int
    status: str  # "Enter" or "Exit"


@dataclass(frozen=True, kw_only=True)
class GmToolsTime(DomainEvent):
    """Time spent in Game Master mode, in seconds."""
    player_name: str
    player_id: int
    duration: float


# A rule builder receives the match plus the prefix time and the raw line.
# Raising ValueError drops the line.
Builder = Callable[[re.Match, Optional[str], str], Optional[DomainEvent]]


@dataclass(frozen=True)
class LogRule:
    """One pattern -> event constructor entry of the rule table."""
    name: str
    pattern: re.Pattern
    build: Builder
    anchored: bool = True  # match at the start of the message only

    def match(self, message: str) -> Optional[re.Match]:
        if self.anchored:
            return self.pattern.match(message)
        return self.pattern.search(message)


def split_prefix(line: str) -> tuple[Optional[str], str]:
    """Split a console line into (time, message). Lines without prefix keep time None."""
    match = LINE_PREFIX_PATTERN.match(line)
    if not match:
        return None, line.strip()
    return match.group('time'), match.group('message').strip()


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no'):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


class LogParser:
    """
    Base class for log parsers.

    Subclasses implement parse_line() and list the event classes they can
    produce in event_types. Custom parsers read their own log file; the server
    orchestrator forwards every event they publish.
    """

    name = "parser"
    event_types: tuple[type, ...] = ()

    def __init__(self, options: Optional[dict] = None):
        self.options = options or {}
        self.events = EventBus(self.name)

    def parse_line(self, line: str) -> Optional[DomainEvent]:
        raise NotImplementedError

    def feed(self, line: str) -> Optional[DomainEvent]:
        """Parse one line and publish the resulting event, if any."""
        event = self.parse_line(line)
        if event is not None:
            self.events.publish(event)
        return event

    def reset(self) -> None:
        """Forget per-file state. Called when the log file rotates."""
        pass


class VoteKickBuffer:
    """Pending vote kick starts keyed by victim id."""

    def __init__(self, window_ms: int = VOTE_KICK_WINDOW_MS,
                 clock: Optional[Callable[[], float]] = None):
        self.window_ms = window_ms
        self._clock = clock or (lambda: time.time() * 1000)
        self._starts: dict[int, tuple[VoteKickStart, float]] = {}

    def add(self, event: VoteKickStart) -> None:
        self.prune()
        self._starts[event.vote_victim_id] = (event, self._clock())

    def pop(self, victim_id: int) -> Optional[VoteKickStart]:
        self.prune()
        entry = self._starts.pop(victim_id, None)
        return entry[0] if entry else None

    def prune(self) -> None:
        now = self._clock()
        expired = [victim for victim, (_, started) in self._starts.items()
                   if now - started > self.window_ms]
        for victim in expired:
            logger.debug(f"Vote kick start against {victim} expired without a result")
            del self._starts[victim]

    def clear(self) -> None:
        self._starts.clear()

    def __len__(self) -> int:
        return len(self._starts)

    def __contains__(self, victim_id: int) -> bool:
        return victim_id in self._starts


class ReforgerLogParser(LogParser):
    """Parser for the Arma Reforger console.log."""

    name = "reforger"

    PLAYER_JOINED_PATTERN = re.compile(
        r"BattlEye Server: 'Player #(?P<number>\d+)\s+(?P<name>.+?)\s+"
        r"\((?P<ip>[\d.]+):(?P<port>\d+)\) connected'"
    )

    PLAYER_GUID_PATTERN = re.compile(
        r"BattlEye Server: 'Player #(?P<number>\d+)\s+(?P<name>.+?)\s+-\s+"
        r"BE GUID: (?P<guid>[0-9a-fA-F]{32})'"
    )

    PLAYER_UPDATE_PATTERN = re.compile(
        r'### Updating player: PlayerId=(?P<id>\d+), Name=(?P<name>.+?), '
        r'IdentityId=(?P<uid>[0-9a-fA-F-]+)'
    )

    VOTE_KICK_START_PATTERN = re.compile(
        r"Player '(?P<offender>\d+)' approved vote \| Vote Type: 'KICK' \| "
        r"Vote value: '(?P<victim>\d+)' \| Count \((?P<count>1)/(?P<total>\d+)\)"
    )

    VOTE_KICK_VICTIM_PATTERN = re.compile(
        r"Vote kick succeeded against player '(?P<name>.+?)' \(ID: (?P<id>\d+)\)"
    )

    SERVER_HEALTH_PATTERN = re.compile(r'\bFPS:\s*(?P<fps>[\d.]+)')
    MEMORY_PATTERN = re.compile(r'\bMem:\s*(?P<memory>\d+)\s*kB')
    PLAYER_COUNT_PATTERN = re.compile(r'\bPlayer:\s*(?P<player>\d+)')

    SAT_PLAYER_KILLED_PATTERN = re.compile(
        r'ServerAdminTools \| Event serveradmintools_player_killed \| '
        r'player: (?P<victim>.+?), instigator: (?P<killer>.+?), friendly: (?P<friendly>\w+)'
    )

    SAT_BASE_CAPTURED_PATTERN = re.compile(
        r'ServerAdminTools \| Event serveradmintools_conflict_base_captured \| '
        r'faction: (?P<faction>.+?), base: (?P<base>.+?)\s*$'
    )

    SAT_ADMIN_ACTION_PATTERN = re.compile(
        r'ServerAdminTools \| Event serveradmintools_admin_action \| '
        r'action: (?P<action>.+?), admin: (?P<admin>.+?)(?:, player: (?P<player>.+?))?\s*$'
    )

    SAT_GAME_ENDED_PATTERN = re.compile(
        r'ServerAdminTools \| Event serveradmintools_game_ended \| '
        r'reason: (?P<reason>.+?), winner: (?P<winner>.+?)\s*$'
    )

    GM_TOOLS_STATUS_PATTERN = re.compile(
        r'\[GMTools\] Player: (?P<name>.+?) \| ID: (?P<id>\d+) \| Status: (?P<status>Enter|Exit)'
    )

    GM_TOOLS_TIME_PATTERN = re.compile(
        r'\[GMTools\] Player: (?P<name>.+?) \| ID: (?P<id>\d+) \| Duration: (?P<duration>[\d.]+)'
    )

    CHAT_PATTERN = re.compile(
        r'\[Chat\] ChannelId: (?P<channel>\d+) \| PlayerId: (?P<id>\d+) \| '
        r'Name: (?P<name>.+?) \| Message: (?P<message>.*)$'
    )

    GAME_START_PATTERN = re.compile(r'Game successfully created')
    GAME_END_PATTERN = re.compile(r'\bGame ended\b|SCR_BaseGameMode::OnGameEnd')
    APPLICATION_HANG_PATTERN = re.compile(r'Application hang|Application not responding')

    event_types = (
        PlayerJoined, PlayerGuid, PlayerUpdate, VoteKickStart, VoteKickVictim,
        ServerHealth, PlayerKilled, BaseCapture, AdminAction, GameEnd,
        GmToolsStatus, GmToolsTime, ChatMessage, GameStart, ApplicationHang,
    )

    def __init__(self, options: Optional[dict] = None,
                 clock: Optional[Callable[[], float]] = None):
        super().__init__(options)
        self.vote_kicks = VoteKickBuffer(
            self.options.get('vote_kick_window_ms', VOTE_KICK_WINDOW_MS), clock
        )
        self.fps: Optional[float] = None
        self.memory: Optional[int] = None
        self.player_count: Optional[int] = None
        self._failed_rules: set[str] = set()

        # Order matters: chat goes first so player-typed text never reaches
        # the other rules, GUID lines and SAT game_ended must win over the
        # broader join and game end patterns.
        self.rules: list[LogRule] = [
            LogRule('chat_message', self.CHAT_PATTERN, self._build_chat),
            LogRule('player_guid', self.PLAYER_GUID_PATTERN, self._build_player_guid),
            LogRule('player_joined', self.PLAYER_JOINED_PATTERN, self._build_player_joined),
            LogRule('player_update', self.PLAYER_UPDATE_PATTERN, self._build_player_update),
            LogRule('vote_kick_start', self.VOTE_KICK_START_PATTERN, self._build_vote_kick_start),
            LogRule('vote_kick_victim', self.VOTE_KICK_VICTIM_PATTERN, self._build_vote_kick_victim),
            LogRule('server_health', self.SERVER_HEALTH_PATTERN, self._build_server_health),
            LogRule('sat_player_killed', self.SAT_PLAYER_KILLED_PATTERN, self._build_player_killed),
            LogRule('sat_base_captured', self.SAT_BASE_CAPTURED_PATTERN, self._build_base_capture),
            LogRule('sat_admin_action', self.SAT_ADMIN_ACTION_PATTERN, self._build_admin_action),
            LogRule('sat_game_ended', self.SAT_GAME_ENDED_PATTERN, self._build_sat_game_end),
            LogRule('gm_tools_status', self.GM_TOOLS_STATUS_PATTERN, self._build_gm_status),
            LogRule('gm_tools_time', self.GM_TOOLS_TIME_PATTERN, self._build_gm_time),
            LogRule('game_start', self.GAME_START_PATTERN,
                    lambda m, t, raw: GameStart(time=t, raw_line=raw), anchored=False),
            LogRule('game_end', self.GAME_END_PATTERN,
                    lambda m, t, raw: GameEnd(time=t, raw_line=raw), anchored=False),
            LogRule('application_hang', self.APPLICATION_HANG_PATTERN,
                    lambda m, t, raw: ApplicationHang(time=t, raw_line=raw), anchored=False),
        ]

    def parse_line(self, line: str) -> Optional[DomainEvent]:
        """
        Parse a single log line into a domain event.

        Args:
            line: Raw line from console.log

        Returns:
            The event of the first matching rule, or None
        """
        line = line.strip()
        if not line:
            return None

        event_time, message = split_prefix(line)
        for rule in self.rules:
            match = rule.match(message)
            if not match:
                continue
            try:
                return rule.build(match, event_time, line)
            except ValueError as e:
                self._log_rule_failure(rule, line, e)
                return None
        return None

    def reset(self) -> None:
        self.vote_kicks.clear()

    def _log_rule_failure(self, rule: LogRule, line: str, error: Exception) -> None:
        if rule.name in self._failed_rules:
            logger.debug(f"Dropped {rule.name} line: {error}")
            return
        self._failed_rules.add(rule.name)
        logger.warning(f"Dropped {rule.name} line with malformed field ({error}): {line}")

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def _build_player_joined(self, match, event_time, line) -> PlayerJoined:
        return PlayerJoined(
            time=event_time,
            raw_line=line,
            player_number=int(match.group('number')),
            player_name=match.group('name').strip(),
            player_ip=match.group('ip'),
            player_port=int(match.group('port')),
        )

    def _build_player_guid(self, match, event_time, line) -> PlayerGuid:
        return PlayerGuid(
            time=event_time,
            raw_line=line,
            player_number=int(match.group('number')),
            player_name=match.group('name').strip(),
            be_guid=match.group('guid').lower(),
        )

    def _build_player_update(self, match, event_time, line) -> PlayerUpdate:
        return PlayerUpdate(
            time=event_time,
            raw_line=line,
            player_id=int(match.group('id')),
            player_name=match.group('name').strip(),
            player_uid=match.group('uid'),
        )

    def _build_vote_kick_start(self, match, event_time, line) -> VoteKickStart:
        event = VoteKickStart(
            time=event_time,
            raw_line=line,
            vote_offender_id=int(match.group('offender')),
            vote_victim_id=int(match.group('victim')),
            vote_count=int(match.group('count')),
            vote_total=int(match.group('total')),
        )
        self.vote_kicks.add(event)
        return event

    def _build_vote_kick_victim(self, match, event_time, line) -> VoteKickVictim:
        victim_id = int(match.group('id'))
        start = self.vote_kicks.pop(victim_id)
        if start is None:
            logger.debug(f"Vote kick against {victim_id} succeeded with no recorded start")
        return VoteKickVictim(
            time=event_time,
            raw_line=line,
            vote_victim_name=match.group('name'),
            vote_victim_id=victim_id,
            vote_offender_id=start.vote_offender_id if start else None,
        )

    def _build_server_health(self, match, event_time, line) -> ServerHealth:
        fps = float(match.group('fps'))
        memory_match = self.MEMORY_PATTERN.search(line)
        player_match = self.PLAYER_COUNT_PATTERN.search(line)
        memory = int(memory_match.group('memory')) if memory_match else self.memory
        player_count = int(player_match.group('player')) if player_match else self.player_count

        # Only commit once every field converted
        self.fps, self.memory, self.player_count = fps, memory, player_count
        return ServerHealth(
            time=event_time,
            raw_line=line,
            fps=self.fps,
            memory=self.memory,
            player=self.player_count,
        )

    def _build_player_killed(self, match, event_time, line) -> PlayerKilled:
        return PlayerKilled(
            time=event_time,
            raw_line=line,
            victim_name=match.group('victim').strip(),
            killer_name=match.group('killer').strip(),
            friendly=parse_bool(match.group('friendly')),
        )

    def _build_base_capture(self, match, event_time, line) -> BaseCapture:
        return BaseCapture(
            time=event_time,
            raw_line=line,
            faction=match.group('faction').strip(),
            base=match.group('base').strip(),
        )

    def _build_admin_action(self, match, event_time, line) -> AdminAction:
        player = match.group('player')
        return AdminAction(
            time=event_time,
            raw_line=line,
            action=match.group('action').strip(),
            admin_name=match.group('admin').strip(),
            player_name=player.strip() if player else None,
        )

    def _build_sat_game_end(self, match, event_time, line) -> GameEnd:
        return GameEnd(
            time=event_time,
            raw_line=line,
            reason=match.group('reason').strip(),
            winner=match.group('winner').strip(),
        )

    def _build_gm_status(self, match, event_time, line) -> GmToolsStatus:
        return GmToolsStatus(
            time=event_time,
            raw_line=line,
            player_name=match.group('name').strip(),
            player_id=int(match.group('id')),
            status=match.group('status'),
        )

    def _build_gm_time(self, match, event_time, line) -> GmToolsTime:
        return GmToolsTime(
            time=event_time,
            raw_line=line,
            player_name=match.group('name').strip(),
            player_id=int(match.group('id')),
            duration=float(match.group('duration')),
        )

    def _build_chat(self, match, event_time, line) -> ChatMessage:
        channel_id = int(match.group('channel'))
        return ChatMessage(
            time=event_time,
            raw_line=line,
            channel_id=channel_id,
            channel_type=CHAT_CHANNELS.get(channel_id, "Unknown"),
            player_id=int(match.group('id')),
            player_name=match.group('name').strip(),
            message=match.group('message').strip(),
        )


BUILTIN_PARSERS = {
    'reforger': 'services.log_parsers:ReforgerLogParser',
    'wcs': 'services.wcs_parser:WCSLogParser',
}


def load_parser_class(reference: str) -> type[LogParser]:
    """
    Resolve a parser class from a builtin name or a "module:Class" reference.

    Raises:
        ValueError: malformed reference or unknown builtin name
        ImportError: module cannot be imported
        TypeError: the target is not a LogParser subclass
    """
    reference = BUILTIN_PARSERS.get(reference, reference)
    module_name, sep, class_name = reference.partition(':')
    if not sep or not module_name or not class_name:
        raise ValueError(f"Unknown parser '{reference}', expected a builtin name or module:Class")

    module = importlib.import_module(module_name)
    try:
        parser_class = getattr(module, class_name)
    except AttributeError:
        raise ImportError(f"Module '{module_name}' has no class '{class_name}'")

    if not isinstance(parser_class, type) or not issubclass(parser_class, LogParser):
        raise TypeError(f"{reference} is not a LogParser subclass")
    return parser_class
