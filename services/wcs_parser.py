# services/wcs_parser.py
"""
Custom parser for the WCS (Wolfpack Community Server) log file.

The WCS mod writes one JSON object per line with an "event" key:

    {"event": "PlayerConnected", "timestamp": "...", "playerName": "...",
     "playerGUID": "...", "profileName": "...", "platform": "..."}
    {"event": "EditorAction", "timestamp": "...", "playerId": 3,
     "playerName": "...", "playerGUID": "...", "action": "...", "actionType": "...",
     "hoveredEntityComponentName": "...", "selectedEntityNames": [...]}

Lines may carry a console prefix before the JSON object.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from services.log_parsers import DomainEvent, LogParser, split_prefix

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class EditorAction(DomainEvent):
    """Game Master editor action recorded by WCS."""
    player_id: int
    player_name: Optional[str] = None
    player_guid: Optional[str] = None
    action: Optional[str] = None
    action_type: Optional[str] = None
    hovered_entity_component_name: Optional[str] = None
    hovered_entity_component_owner_id: Optional[int] = None
    selected_entity_names: tuple[str, ...] = ()
    selected_entity_owner_ids: tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class PlayerConnected(DomainEvent):
    """Player platform profile recorded by WCS on connect."""
    player_name: str
    player_guid: str
    profile_name: Optional[str] = None
    platform: Optional[str] = None


class WCSLogParser(LogParser):
    """Parser for WCS JSON event lines."""

    name = "wcs"
    event_types = (EditorAction, PlayerConnected)

    def parse_line(self, line: str) -> Optional[DomainEvent]:
        line = line.strip()
        _, message = split_prefix(line)
        if message.startswith('[Chat]'):
            return None  # players can type JSON into chat
        start = line.find('{')
        if start < 0:
            return None

        try:
            data = json.loads(line[start:])
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON WCS line: {line[:100]}")
            return None
        if not isinstance(data, dict):
            return None

        event_name = data.get('event')
        try:
            if event_name == 'EditorAction':
                return self._editor_action(data, line)
            if event_name == 'PlayerConnected':
                return self._player_connected(data, line)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropped WCS {event_name} line with malformed field ({e}): {line}")
        return None

    def _editor_action(self, data: dict, line: str) -> EditorAction:
        owner_id = data.get('hoveredEntityComponentOwnerId')
        return EditorAction(
            time=data.get('timestamp'),
            raw_line=line,
            player_id=int(data.get('playerId') or 0),
            player_name=data.get('playerName'),
            player_guid=data.get('playerGUID'),
            action=data.get('action'),
            action_type=data.get('actionType'),
            hovered_entity_component_name=data.get('hoveredEntityComponentName'),
            hovered_entity_component_owner_id=int(owner_id) if owner_id is not None else None,
            selected_entity_names=tuple(data.get('selectedEntityNames') or ()),
            selected_entity_owner_ids=tuple(int(i) for i in data.get('selectedEntityOwnerIds') or ()),
        )

    def _player_connected(self, data: dict, line: str) -> Optional[PlayerConnected]:
        if not data.get('playerGUID') or not data.get('playerName'):
            logger.warning(f"Incomplete WCS PlayerConnected data: {line}")
            return None
        return PlayerConnected(
            time=data.get('timestamp'),
            raw_line=line,
            player_name=data['playerName'],
            player_guid=data['playerGUID'],
            profile_name=data.get('profileName'),
            platform=data.get('platform'),
        )
