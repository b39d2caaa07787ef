"""infobot 风格的问题预处理与术语规范化。

规则是按顺序执行的正则表，沿用经典 infobot 的口语化改写（包括俚语与脏话过滤），
保持原样不做“改良”，以免已有事实库的匹配行为发生变化。
"""

import re
from typing import List, Optional, Tuple

QUESTION_PREFIXES = (
    "who", "who is", "who are",
    "what", "what's", "what is", "what are",
    "where", "where's", "where is", "where are",
)

_I = re.IGNORECASE

_PREPROCESS_RULES: List[Tuple[str, str]] = [
    (r"^where is ", ""),
    (r"\s+\?$", "?"),
    (r"^whois ", ""),
    (r"^who is ", ""),
    (r"^what is (a|an)?", ""),
    (r"^how do i ", ""),
    (r"^where can i (find|get|download)", ""),
    (r"^how about ", ""),
    (r" da ", " the "),
    (r"^(stupid )?q(uestion)?:\s+", ""),
    (r"^(does )?(any|ne)(1|one|body) know ", ""),
    (r"^[uh]+m*[,\.]* +", ""),
    (r"^well([, ]+)", ""),
    (r"^still([, ]+)", ""),
    (r"^(gee|boy|golly|gosh)([, ]+)", ""),
    (r"^(well|and|but|or|yes)([, ]+)", ""),
    (r"^o+[hk]+(a+y+)?([,. ]+)", ""),
    (r"^g(eez|osh|olly)([,. ]+)", ""),
    (r"^w(ow|hee|o+ho+)([,. ]+)", ""),
    (r"^heya?,?( folks)?([,. ]+)", ""),
]

_QUERY_RULES_HEAD: List[Tuple[str, str, int]] = [
    (r" (where|what|who)\s+(\S+)\s+(is|are) ", r" \1 \3 \2 ", _I),
    (r" (where|what|who)\s+(.*)\s+(is|are) ", r" \1 \3 \2 ", _I),
    (r"^\s*(.*?)\s*", r"\1", 0),
    (r"be tellin'?g?", "tell", _I),
    (r" '?bout", " about", _I),
    (r",? any(hoo?w?|ways?)", " ", _I),
    (r",?\s*(pretty )*please\??\s*$", "?", _I),
]

_COUNTRY_QUESTION = re.compile(r"wh(at|ich)\s+(add?res?s|country|place|net (suffix|domain))", _I)

_QUERY_RULES_TAIL: List[Tuple[str, str, int]] = [
    (r"th(e|at|is) (((m(o|u)th(a|er) ?)?fuck(in'?g?)?|hell|heck|(god-?)?damn?(ed)?) ?)+", "", _I),
    (r"wtf", "where", _I),
    (r"this (.*) thingy?", r" \1", _I),
    (r"this thingy? (called )?", "", _I),
    (r"ha(s|ve) (an?y?|some|ne) (idea|clue|guess|seen) ", "know ", _I),
    (r"does (any|ne|some) ?(1|one|body) know ", "", _I),
    (r"do you know ", "", _I),
    (r"can (you|u|((any|ne|some) ?(1|one|body)))( please)? tell (me|us|him|her)", "", _I),
    (r"where (\S+) can \S+ (a|an|the)?", "", _I),
    (r"(can|do) (i|you|one|we|he|she) (find|get)( this)?", "is", _I),
    (r"(i|one|we|he|she) can (find|get)", "is", _I),
    (r"(the )?(address|url) (for|to) ", "", _I),
    (r"(where is )+", "where is ", _I),
    (r"\s+", " ", 0),
    (r"^\s+", "", 0),
]

_FINAL_QMARK = re.compile(r"\s*[\/?!]*\?+\s*$")

_ARTICLE_PREFIX = re.compile(r"^(the|da|an?)\s+", _I)

_SET_SEPARATORS = (" is ", " are ", " was ", " were ")


def normalize_term(term: Optional[str]) -> Optional[str]:
    """``"The Foo?"`` / ``"foo"`` / ``"A Foo"`` -> ``"foo"``；空结果返回 None。"""
    if not term or not term.strip():
        return None
    normalized = term.strip().rstrip("?")
    normalized = _ARTICLE_PREFIX.sub("", normalized).strip()
    return normalized.lower() or None


def preprocess_question(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    question = message
    for pattern, replacement in _PREPROCESS_RULES:
        question = re.sub(pattern, replacement, question, flags=_I)
    return question


def normalize_query(text: Optional[str]) -> Tuple[str, bool]:
    """口语化问题改写为查询词，返回 (查询, 是否以问号结尾)。"""
    if not text or not text.strip():
        return "", False

    query = f" {text} "
    for pattern, replacement, flags in _QUERY_RULES_HEAD:
        query = re.sub(pattern, replacement, query, flags=flags)

    if _COUNTRY_QUESTION.search(query):
        if len(query.strip()) == 2 and not query.strip().startswith("."):
            query = "." + query.strip()
        query = query.rstrip() + "?"

    for pattern, replacement, flags in _QUERY_RULES_TAIL:
        query = re.sub(pattern, replacement, query, flags=flags)

    final_qmark = False
    if _FINAL_QMARK.search(query):
        final_qmark = True
        query = _FINAL_QMARK.sub("", query)

    query = re.sub(r"\s+", " ", query)
    return query.strip(), final_qmark


def switch_person(text: str, who: Optional[str], addressed: bool, bot_name: Optional[str]) -> str:
    """把第一/第二人称换成说话人或机器人的名字。"""
    if not text or not text.strip():
        return text

    def sub(pattern: str, replacement: str, value: str) -> str:
        return re.sub(pattern, lambda _m: replacement, value, flags=_I)

    if who and who.strip():
        for pattern in (r"\b(I am)\b", r"\b(i'm)\b", r"\b(i am)\b", r"\b(am i)\b", r"\b(me)\b"):
            text = sub(pattern, who, text)
        text = sub(r"\b(my)\b", f"{who}'s", text)
        text = sub(r"\bI\b", who, text)

    if bot_name and bot_name.strip():
        text = sub(r"\byou\b", "I" if addressed else bot_name, text)
        text = sub(r"\byour\b", "my" if addressed else f"{bot_name}'s", text)
        text = sub(r"\byourself\b", "myself" if addressed else bot_name, text)
    return text


_QUESTION_PREFIX_PATTERN = re.compile(
    r"^\s(" + "|".join(re.escape(p) for p in QUESTION_PREFIXES) + r")\s", _I
)


def build_queries(message: Optional[str], who: Optional[str], addressed: bool, bot_name: Optional[str]) -> List[str]:
    """生成候选查询：原句、规范化、人称替换、去掉疑问词前缀，按顺序去重。"""
    queries: List[str] = []
    if not message or not message.strip():
        return queries

    queries.append(message.strip())

    normalized, _ = normalize_query(message)
    if normalized != message:
        queries.append(normalized)

    switched = switch_person(normalized, who, addressed, bot_name)
    if switched != normalized:
        queries.append(switched)

    cleaned = re.sub(r"\s+at\s*(\?*)$", r"\1", switched, flags=_I)
    cleaned = re.sub(r"^explain\s*(\?*)", r"\1", cleaned, flags=_I)
    cleaned = _QUESTION_PREFIX_PATTERN.sub(" ", f" {cleaned} ", count=1).strip()
    if cleaned and cleaned not in queries:
        queries.append(cleaned)
    return queries


def parse_set_statement(content: Optional[str]) -> Optional[Tuple[str, str]]:
    """``"X is Y"`` -> ``(X, Y)``；取最早出现的 is/are/was/were。"""
    if not content:
        return None
    lowered = content.lower()
    best = None
    for separator in _SET_SEPARATORS:
        index = lowered.find(separator)
        if index >= 0 and (best is None or index < best[0]):
            best = (index, separator)
    if best is None or best[0] <= 0:
        return None
    index, separator = best
    term = content[:index].strip()
    fact = content[index + len(separator):].strip()
    if not term or not fact:
        return None
    return term, fact
