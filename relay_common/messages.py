from dataclasses import dataclass, field
from typing import Iterable, List, Optional

# Server -> client tokens
PROMPT = "NOME?"
ERROR = "ERRO"
USERLIST = "USERLIST"
GROUP = "GRUPO"
MSG = "MSG"
GROUP_MSG = "GRUPO_MSG"
FILE = "ARQUIVO"
GROUP_FILE = "GRUPO_ARQUIVO"

# Client -> server commands
CMD_CREATE_GROUP = "/grupo_criar"
CMD_ADD_MEMBER = "/grupo_add"
CMD_MSG = "/msg"
CMD_FILE = "/arquivo"
CMD_CLOSE = "close"

# Error reasons sent after "ERRO:"
ERR_BAD_USERNAME = "Nome inválido ou já em uso."
ERR_BAD_GROUP = "Nome de grupo inválido ou já existe."
ERR_ADD_USAGE = "Uso: /grupo_add grupo usuario"
ERR_ADD_FAILED = "Grupo ou usuário não existe."
ERR_MSG_USAGE = "Uso: /msg destino mensagem"
ERR_FILE_USAGE = "Uso: /arquivo destino nomeArquivo tamanho"
ERR_NO_DESTINATION = "Destino não encontrado ou sem permissão."
ERR_UNKNOWN_COMMAND = "Comando desconhecido."
ERR_COMMAND_FAILED = "Falha ao processar comando."


def error_line(reason: str) -> str:
    return f"{ERROR}:{reason}"

def userlist_line(names: Iterable[str]) -> str:
    return f"{USERLIST}|" + ",".join(names)

def group_line(group: str, members: Iterable[str]) -> str:
    return f"{GROUP}:{group}:" + ",".join(members)

def direct_message_line(sender: str, text: str) -> str:
    return f"{MSG}:{sender}:{text}"

def group_message_line(group: str, sender: str, text: str) -> str:
    return f"{GROUP_MSG}:{group}:{sender}:{text}"

def file_announce_line(sender: str, filename: str, size: int) -> str:
    return f"{FILE}:{sender}:{filename}:{size}"

def group_file_announce_line(group: str, sender: str, filename: str, size: int) -> str:
    return f"{GROUP_FILE}:{group}:{sender}:{filename}:{size}"


def create_group_command(group: str) -> str:
    return f"{CMD_CREATE_GROUP} {group}"

def add_member_command(group: str, member: str) -> str:
    return f"{CMD_ADD_MEMBER} {group} {member}"

def message_command(target: str, text: str) -> str:
    return f"{CMD_MSG} {target} {text}"

def file_command(target: str, filename: str, size: int) -> str:
    return f"{CMD_FILE} {target} {filename} {size}"


@dataclass
class ServerEvent:
    '''One parsed server -> client line. Unused fields stay None.'''
    kind: str               # PROMPT | ERROR | USERLIST | GROUP | MSG | GROUP_MSG | FILE | GROUP_FILE | "unknown"
    raw: str
    sender: Optional[str] = None
    group: Optional[str] = None
    text: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    members: List[str] = field(default_factory=list)
    data: Optional[bytes] = None   # raw payload, filled by the reader for file events
    truncated: bool = False

    @property
    def has_payload(self) -> bool:
        return self.kind in (FILE, GROUP_FILE)


def _csv(value: str) -> List[str]:
    return [v for v in value.split(",") if v]


def parse_server_line(line: str) -> ServerEvent:
    '''
    The function turns one control line received from the server into a ServerEvent.
    Input:
        - line: text line without its terminator
    Output:
        - ServerEvent; kind "unknown" for anything that is not a known token
    File sizes are split from the right so a filename may contain ':'.
    '''
    if line == PROMPT:
        return ServerEvent(PROMPT, line)
    if line.startswith(USERLIST + "|"):
        return ServerEvent(USERLIST, line, members=_csv(line[len(USERLIST) + 1:]))
    if line.startswith(ERROR + ":"):
        return ServerEvent(ERROR, line, text=line[len(ERROR) + 1:])

    kind, _, rest = line.partition(":")
    try:
        if kind == GROUP:
            group, members = rest.split(":", 1)
            return ServerEvent(GROUP, line, group=group, members=_csv(members))
        if kind == MSG:
            sender, text = rest.split(":", 1)
            return ServerEvent(MSG, line, sender=sender, text=text)
        if kind == GROUP_MSG:
            group, sender, text = rest.split(":", 2)
            return ServerEvent(GROUP_MSG, line, group=group, sender=sender, text=text)
        if kind == FILE:
            head, size = rest.rsplit(":", 1)
            sender, filename = head.split(":", 1)
            return ServerEvent(FILE, line, sender=sender, filename=filename, size=int(size))
        if kind == GROUP_FILE:
            head, size = rest.rsplit(":", 1)
            group, sender, filename = head.split(":", 2)
            return ServerEvent(GROUP_FILE, line, group=group, sender=sender,
                               filename=filename, size=int(size))
    except ValueError:
        # malformed line for a known token
        pass
    return ServerEvent("unknown", line)
