# retry.py
import os
from dataclasses import dataclass
from typing import Iterable, Optional

RETRY = "retry"
FAIL = "fail"

# Error categories shown to users
MEMORY = "memory"
TIMEOUT = "timeout"
GENERIC = "generic"
EXHAUSTED = "exhausted"

MESSAGES = {
    MEMORY: "Vidéo trop volumineuse pour être traitée. Essayez avec une vidéo plus courte ou de résolution inférieure.",
    TIMEOUT: "Le traitement a pris trop de temps. Essayez avec une vidéo plus courte.",
    GENERIC: "Erreur lors du traitement de la vidéo. Vérifiez que le fichier est valide.",
    EXHAUSTED: "Le traitement a échoué après plusieurs tentatives.",
}
CANCELLED_MESSAGE = "Traitement annulé par l'utilisateur."
INTERNAL_MESSAGE = "Erreur interne lors du traitement de la vidéo."

# Checked in this order; the first category with a matching marker wins.
PERMANENT_MARKERS = (
    (MEMORY, ("cannot allocate memory", "out of memory", "enomem")),
    (TIMEOUT, ("timed out", "killed by signal", "signal 9")),
    (GENERIC, (
        "processing failed",
        "conversion failed",
        "invalid data found",
        "moov atom not found",
        "error while decoding",
        "no video stream",
        "error initializing filter",
    )),
)


@dataclass(frozen=True)
class RetryDecision:
    action: str                 # RETRY | FAIL
    category: Optional[str]     # None when retrying
    message: Optional[str]      # user-facing, None when retrying

    @property
    def retry(self) -> bool:
        return self.action == RETRY


def strip_paths(error_text: str, paths: Iterable[str] = ()) -> str:
    """Blank out file paths (and their base names) so a file name never reads as an engine marker."""
    text = error_text or ""
    names = set()
    for path in paths:
        if path:
            names.add(str(path))
            names.add(os.path.basename(str(path)))
    # longest first: a full path must go before its own base name
    for name in sorted(names, key=len, reverse=True):
        if name:
            text = text.replace(name, "<file>")
    return text


def permanent_category(error_text: str) -> Optional[str]:
    text = (error_text or "").lower()
    for category, markers in PERMANENT_MARKERS:
        if any(m in text for m in markers):
            return category
    return None


def classify_failure(error_text: str, attempts: int, retry_budget: int = 1, paths: Iterable[str] = ()) -> RetryDecision:
    """
    Decide what happens to a job after a failed engine run.

    attempts: re-queues already spent on this job (0 on the first run).
    retry_budget: re-queues allowed for transient failures.
    paths: the job's input/output files, ignored when looking for markers.
    """
    category = permanent_category(strip_paths(error_text, paths))
    if category is not None:
        return RetryDecision(FAIL, category, MESSAGES[category])
    if attempts < retry_budget:
        return RetryDecision(RETRY, None, None)
    return RetryDecision(FAIL, EXHAUSTED, MESSAGES[EXHAUSTED])
