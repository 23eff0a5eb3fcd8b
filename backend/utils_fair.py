import math

UINT16_RANGE = 2**16
MAX_UINT16 = UINT16_RANGE - 1

HOUSE_EDGE = 0.06  # 6%
MAX_MULTIPLIER = 25.0


def uint16_to_uniform01(value: int) -> float:
    return (value + 1) / UINT16_RANGE  # (0,1]


def crash_multiplier(value: int, house_edge: float = HOUSE_EDGE,
                     max_multiplier: float = MAX_MULTIPLIER) -> float:
    """Ponto de crash para um sorteio de 16 bits (inversa da CDF, com teto e piso 1.0x)."""
    if not 0 <= value <= MAX_UINT16:
        raise ValueError(f"draw out of uint16 range: {value}")
    u = uint16_to_uniform01(value)
    x = min(max_multiplier, (1.0 - house_edge) / u)
    return max(1.0, x)


def growth_rate(target_multiplier: float, target_time: float) -> float:
    return math.log(target_multiplier) / target_time


def multiplier_at(t_sec: float, k: float, max_multiplier: float = MAX_MULTIPLIER) -> float:
    """Multiplicador no tempo t (segundos) na curva exponencial."""
    return min(max_multiplier, math.exp(k * max(0.0, t_sec)))


def time_to_multiplier(multiplier: float, k: float) -> float:
    return math.log(multiplier) / k


def survival_probability(target: float, house_edge: float = HOUSE_EDGE,
                         max_multiplier: float = MAX_MULTIPLIER) -> float:
    """Probabilidade exata (sobre os 65536 sorteios) de a rodada chegar a `target`."""
    if target <= 1.0:
        return 1.0
    if target > max_multiplier:
        return 0.0
    # crash >= target  <=>  (1-h)/U >= target  <=>  R + 1 <= (1-h) * 65536 / target
    limit = math.floor((1.0 - house_edge) * UINT16_RANGE / target)
    # borda de ponto flutuante: confere o valor calculado de fato
    while limit > 0 and crash_multiplier(limit - 1, house_edge, max_multiplier) < target:
        limit -= 1
    while limit < UINT16_RANGE and crash_multiplier(limit, house_edge, max_multiplier) >= target:
        limit += 1
    return limit / UINT16_RANGE


def expected_return(target: float, house_edge: float = HOUSE_EDGE,
                    max_multiplier: float = MAX_MULTIPLIER) -> float:
    """Retorno por unidade apostada de quem sempre retira em `target`."""
    return target * survival_probability(target, house_edge, max_multiplier)
