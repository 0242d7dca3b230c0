COMPETITION_FACTORS = {
    "high": 0.4,
    "medium": 0.7,
    "low": 0.9,
}


def compute_trend_score(search_volume: int, competition: str) -> float:
    """
    score = max(0.1, min(1, volume / 100) * competition factor)
    경쟁이 높을수록 감점. 검색량 100 이상은 동일하게 취급.
    """
    volume = max(0, search_volume or 0)
    factor = COMPETITION_FACTORS.get((competition or "medium").lower(), COMPETITION_FACTORS["medium"])
    return round(max(0.1, min(1.0, volume / 100) * factor), 4)
