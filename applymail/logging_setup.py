import json, logging, os, smtplib, socket, ssl, sys, time
from email.message import EmailMessage
from email.utils import localtime
from logging.handlers import RotatingFileHandler, SMTPHandler

from .config import MailerConfig, from_header, settings

# extra= keys the mailer attaches to its records; grouped under "mail" in JSON output
MAIL_CONTEXT_KEYS = ("mail_mode", "reference_id", "recipient")

_RESERVED = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs", "message", "msg", "name",
    "pathname", "process", "processName", "relativeCreated", "stack_info", "thread",
    "threadName", "taskName",
}


# ---------- Formatters ----------
class JsonFormatter(logging.Formatter):
    """One JSON object per record; mailer context lands in a nested "mail" block."""
    def __init__(self, *, extra_static=None):
        super().__init__()
        self.extra_static = extra_static or {}

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "task": getattr(record, "taskName", None),
        }
        mail = {k: getattr(record, k) for k in MAIL_CONTEXT_KEYS if getattr(record, k, None) is not None}
        if mail:
            payload["mail"] = mail

        for k, v in record.__dict__.items():
            if k in payload or k in _RESERVED or k in MAIL_CONTEXT_KEYS or k.startswith("_"):
                continue
            payload[k] = v
        payload.update(self.extra_static)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Single line for terminals, log files and alert mails."""
    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")


# ---------- Alert handlers ----------
class SSLSMTPHandler(SMTPHandler):
    """
    SMTPHandler over implicit TLS (SMTPS), for relays configured secure.
    The stock handler can only upgrade a plain connection with STARTTLS.
    """
    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = EmailMessage()
            msg["From"] = self.fromaddr
            msg["To"] = ",".join(self.toaddrs)
            msg["Subject"] = self.getSubject(record)
            msg["Date"] = localtime()
            msg.set_content(self.format(record))
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(self.mailhost, self.mailport, timeout=self.timeout, context=context) as smtp:
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


def _smtp_alert_handler(app: str, environment: str, alert_to: str, level: int) -> SMTPHandler | None:
    """
    Error alerts through the relay the mailer uses. Never in sandbox mode:
    Ethereal mailboxes are throwaway and nobody reads them.
    Credentials only ever travel over TLS: SMTPS when the relay is secure,
    STARTTLS otherwise.
    """
    cfg = MailerConfig.from_env()
    if cfg.use_sandbox:
        return None

    kwargs = dict(
        mailhost=(cfg.host, cfg.resolved_port),
        fromaddr=from_header(),
        toaddrs=[e.strip() for e in alert_to.split(",") if e.strip()],
        subject=f"[{environment}] Log Alert: {app}",
        credentials=(cfg.user, cfg.password),
        timeout=settings.smtp_timeout,
    )
    if cfg.resolved_secure:
        h = SSLSMTPHandler(**kwargs)
    else:
        h = SMTPHandler(secure=(), **kwargs)
    h.setLevel(level)
    h.setFormatter(TextFormatter())
    return h


# ---------- Setup ----------
def _environment_name() -> str:
    if settings.app_env:
        return settings.app_env
    hostname = socket.gethostname().casefold()
    if hostname.startswith("prd"):
        return "Production"
    if hostname.startswith("tst"):
        return "Test"
    return "Development"


def _level(val: str | int | None, default: str | None = None) -> int:
    if isinstance(val, int):
        return val
    name = (val or default or settings.log_level).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    *,
    app: str,
    environment: str | None = None,
    level: str | int | None = None,
    use_stream: bool = True,
    stream_json: bool = True,
    filename: str | None = None,
    rolling_max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
    alert_to: str | None = None,
    alert_minimum_level: str | int = logging.ERROR,
) -> logging.Logger:
    """
    Configure the root logger for a process that sends mail: stdout (JSON by
    default), an optional rotating text file (MAILER_LOG_FILE) and optional
    error alerts over the real SMTP relay. Call once at process start.
    """
    env = environment or _environment_name()
    lvl = _level(level)
    static = {"app": app, "env": env, "host": socket.gethostname()}
    filename = filename or settings.log_file

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(lvl)

    if use_stream:
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(JsonFormatter(extra_static=static) if stream_json else TextFormatter())
        root.addHandler(sh)

    if filename:
        folder = os.path.dirname(filename)
        if folder:
            os.makedirs(folder, exist_ok=True)
        fh = RotatingFileHandler(filename=filename, maxBytes=rolling_max_bytes, backupCount=backup_count)
        fh.setFormatter(TextFormatter())
        root.addHandler(fh)

    if alert_to:
        ah = _smtp_alert_handler(app, env, alert_to, _level(alert_minimum_level, default="ERROR"))
        if ah is not None:
            root.addHandler(ah)

    return root
