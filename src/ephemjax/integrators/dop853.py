"""Dormand-Prince 8(5,3) stepping with a 7th-order continuous extension.

Each trial step costs twelve evaluations of the dynamics.  The propagated
solution is of order 8.  Its local error is estimated from two embedded
solutions, of orders 5 and 3, combined as in Hairer's DOP853 so that the
estimate stays reliable when the 5th-order difference is accidentally
small.

Once a step is accepted, four more evaluations (the derivative at the new
state and three extra stages) build the coefficients of a polynomial of
degree 7 that reproduces the solution anywhere inside the step.
:func:`dop853_dense_step` returns those coefficients instead of the raw
stages, and :func:`dop853_interpolate` evaluates them.

Rejected trials are retried inside ``jax.lax.while_loop`` like
:func:`~ephemjax.integrators.dp54.dp54_dense_step`.

References:

    1. E. Hairer, S. P. Norsett and G. Wanner, *Solving Ordinary
       Differential Equations I: Nonstiff Problems*, Sec. II.10, 1993.
"""

from __future__ import annotations

from typing import Callable, Optional

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from ephemjax.config import get_dtype
from ephemjax.integrators._adaptive import compute_next_step_size
from ephemjax.integrators._types import AdaptiveConfig, DenseMethod, DenseStepResult

# Order of the embedded error estimator
ERROR_ORDER = 7.0

# Dynamics evaluations per trial step
STAGES_PER_ATTEMPT = 12

# Dynamics evaluations spent on the continuous extension of a step
DENSE_EVALUATIONS = 4

# Rows of interpolation coefficients
INTERPOLATOR_POWER = 7

# Butcher tableau as sparse rows of (column, coefficient).  Rows 0-11 are
# the stages of the step, row 12 holds the weights of the 8th-order
# solution and rows 13-15 the extra stages of the continuous extension.
_C = (
    0.0,
    0.526001519587677318785587544488e-01,
    0.789002279381515978178381316732e-01,
    0.118350341907227396726757197510,
    0.281649658092772603273242802490,
    0.333333333333333333333333333333,
    0.25,
    0.307692307692307692307692307692,
    0.651282051282051282051282051282,
    0.6,
    0.857142857142857142857142857142,
    1.0,
    1.0,
    0.1,
    0.2,
    0.777777777777777777777777777778,
)

_A = (
    (),
    (  # 1
        (0, 5.26001519587677318785587544488e-2),
    ),
    (  # 2
        (0, 1.97250569845378994544595329183e-2),
        (1, 5.91751709536136983633785987549e-2),
    ),
    (  # 3
        (0, 2.95875854768068491816892993775e-2),
        (2, 8.87627564304205475450678981324e-2),
    ),
    (  # 4
        (0, 2.41365134159266685502369798665e-1),
        (2, -8.84549479328286085344864962717e-1),
        (3, 9.24834003261792003115737966543e-1),
    ),
    (  # 5
        (0, 3.7037037037037037037037037037e-2),
        (3, 1.70828608729473871279604482173e-1),
        (4, 1.25467687566822425016691814123e-1),
    ),
    (  # 6
        (0, 3.7109375e-2),
        (3, 1.70252211019544039314978060272e-1),
        (4, 6.02165389804559606850219397283e-2),
        (5, -1.7578125e-2),
    ),
    (  # 7
        (0, 3.70920001185047927108779319836e-2),
        (3, 1.70383925712239993810214054705e-1),
        (4, 1.07262030446373284651809199168e-1),
        (5, -1.53194377486244017527936158236e-2),
        (6, 8.27378916381402288758473766002e-3),
    ),
    (  # 8
        (0, 6.24110958716075717114429577812e-1),
        (3, -3.36089262944694129406857109825),
        (4, -8.68219346841726006818189891453e-1),
        (5, 2.75920996994467083049415600797e1),
        (6, 2.01540675504778934086186788979e1),
        (7, -4.34898841810699588477366255144e1),
    ),
    (  # 9
        (0, 4.77662536438264365890433908527e-1),
        (3, -2.48811461997166764192642586468),
        (4, -5.90290826836842996371446475743e-1),
        (5, 2.12300514481811942347288949897e1),
        (6, 1.52792336328824235832596922938e1),
        (7, -3.32882109689848629194453265587e1),
        (8, -2.03312017085086261358222928593e-2),
    ),
    (  # 10
        (0, -9.3714243008598732571704021658e-1),
        (3, 5.18637242884406370830023853209),
        (4, 1.09143734899672957818500254654),
        (5, -8.14978701074692612513997267357),
        (6, -1.85200656599969598641566180701e1),
        (7, 2.27394870993505042818970056734e1),
        (8, 2.49360555267965238987089396762),
        (9, -3.0467644718982195003823669022),
    ),
    (  # 11
        (0, 2.27331014751653820792359768449),
        (3, -1.05344954667372501984066689879e1),
        (4, -2.00087205822486249909675718444),
        (5, -1.79589318631187989172765950534e1),
        (6, 2.79488845294199600508499808837e1),
        (7, -2.85899827713502369474065508674),
        (8, -8.87285693353062954433549289258),
        (9, 1.23605671757943030647266201528e1),
        (10, 6.43392746015763530355970484046e-1),
    ),
    (  # 12
        (0, 5.42937341165687622380535766363e-2),
        (5, 4.45031289275240888144113950566),
        (6, 1.89151789931450038304281599044),
        (7, -5.8012039600105847814672114227),
        (8, 3.1116436695781989440891606237e-1),
        (9, -1.52160949662516078556178806805e-1),
        (10, 2.01365400804030348374776537501e-1),
        (11, 4.47106157277725905176885569043e-2),
    ),
    (  # 13
        (0, 5.61675022830479523392909219681e-2),
        (6, 2.53500210216624811088794765333e-1),
        (7, -2.46239037470802489917441475441e-1),
        (8, -1.24191423263816360469010140626e-1),
        (9, 1.5329179827876569731206322685e-1),
        (10, 8.20105229563468988491666602057e-3),
        (11, 7.56789766054569976138603589584e-3),
        (12, -8.298e-3),
    ),
    (  # 14
        (0, 3.18346481635021405060768473261e-2),
        (5, 2.83009096723667755288322961402e-2),
        (6, 5.35419883074385676223797384372e-2),
        (7, -5.49237485713909884646569340306e-2),
        (10, -1.08347328697249322858509316994e-4),
        (11, 3.82571090835658412954920192323e-4),
        (12, -3.40465008687404560802977114492e-4),
        (13, 1.41312443674632500278074618366e-1),
    ),
    (  # 15
        (0, -4.28896301583791923408573538692e-1),
        (5, -4.69762141536116384314449447206),
        (6, 7.68342119606259904184240953878),
        (7, 4.06898981839711007970213554331),
        (8, 3.56727187455281109270669543021e-1),
        (12, -1.39902416515901462129418009734e-3),
        (13, 2.9475147891527723389556272149),
        (14, -9.15095847217987001081870187138),
    ),
)

_B = _A[12]

# 5th-order error weights
_E5 = (
    (0, 0.1312004499419488073250102996e-1),
    (5, -0.1225156446376204440720569753e+1),
    (6, -0.4957589496572501915214079952),
    (7, 0.1664377182454986536961530415e+1),
    (8, -0.3503288487499736816886487290),
    (9, 0.3341791187130174790297318841),
    (10, 0.8192320648511571246570742613e-1),
    (11, -0.2235530786388629525884427845e-1),
)

# 3rd-order error: _B minus these weights
_BHH = (
    (0, 0.244094488188976377952755905512),
    (8, 0.733846688281611857341361741547),
    (11, 0.220588235294117647058823529412e-1),
)

# Rows 3-6 of the interpolation coefficients, as weights of the 16 stages.
# Rows 0-2 follow from the step endpoints.
_D = (
    (
        (0, -0.84289382761090128651353491142e+1),
        (5, 0.56671495351937776962531783590),
        (6, -0.30689499459498916912797304727e+1),
        (7, 0.23846676565120698287728149680e+1),
        (8, 0.21170345824450282767155149946e+1),
        (9, -0.87139158377797299206789907490),
        (10, 0.22404374302607882758541771650e+1),
        (11, 0.63157877876946881815570249290),
        (12, -0.88990336451333310820698117400e-1),
        (13, 0.18148505520854727256656404962e+2),
        (14, -0.91946323924783554000451984436e+1),
        (15, -0.44360363875948939664310572000e+1),
    ),
    (
        (0, 0.10427508642579134603413151009e+2),
        (5, 0.24228349177525818288430175319e+3),
        (6, 0.16520045171727028198505394887e+3),
        (7, -0.37454675472269020279518312152e+3),
        (8, -0.22113666853125306036270938578e+2),
        (9, 0.77334326684722638389603898808e+1),
        (10, -0.30674084731089398182061213626e+2),
        (11, -0.93321305264302278729567221706e+1),
        (12, 0.15697238121770843886131091075e+2),
        (13, -0.31139403219565177677282850411e+2),
        (14, -0.93529243588444783865713862664e+1),
        (15, 0.35816841486394083752465898540e+2),
    ),
    (
        (0, 0.19985053242002433820987653617e+2),
        (5, -0.38703730874935176555105901742e+3),
        (6, -0.18917813819516756882830838328e+3),
        (7, 0.52780815920542364900561016686e+3),
        (8, -0.11573902539959630126141871134e+2),
        (9, 0.68812326946963000169666922661e+1),
        (10, -0.10006050966910838403183860980e+1),
        (11, 0.77771377980534432092869265740),
        (12, -0.27782057523535084065932004339e+1),
        (13, -0.60196695231264120758267380846e+2),
        (14, 0.84320405506677161018159903784e+2),
        (15, 0.11992291136182789328035130030e+2),
    ),
    (
        (0, -0.25693933462703749003312586129e+2),
        (5, -0.15418974869023643374053993627e+3),
        (6, -0.23152937917604549567536039109e+3),
        (7, 0.35763911791061412378285349910e+3),
        (8, 0.93405324183624310003907691704e+2),
        (9, -0.37458323136451633156875139351e+2),
        (10, 0.10409964950896230045147246184e+3),
        (11, 0.29840293426660503123344363579e+2),
        (12, -0.43533456590011143754432175058e+2),
        (13, 0.96324553959188282948394950600e+2),
        (14, -0.39177261675615439165231486172e+2),
        (15, -0.14972683625798562581422125276e+3),
    ),
)


def _combine(row, stages):
    return sum(coef * stages[j] for j, coef in row)


def _dop853_trial(f, t, state, h):
    """Compute one trial step of size ``h``.

    Returns:
        tuple: (8th-order state, 5th-order error, 3rd-order error, list of
            the 12 stages).  Both errors are per unit step.
    """
    stages = [f(t, state)]
    for i in range(1, STAGES_PER_ATTEMPT):
        stages.append(f(t + _C[i] * h, state + h * _combine(_A[i], stages)))

    increment = _combine(_B, stages)
    err5 = _combine(_E5, stages)
    err3 = increment - _combine(_BHH, stages)
    return state + h * increment, err5, err3, stages


def dop853_error_norm(
    err5: ArrayLike,
    err3: ArrayLike,
    h: ArrayLike,
    state_new: ArrayLike,
    state_old: ArrayLike,
    abs_tol: float | tuple[float, ...],
    rel_tol: float | tuple[float, ...],
) -> Array:
    """Score a DOP853 trial step, accepted when the score is at most one.

    Components are scaled like in
    :func:`~ephemjax.integrators._adaptive.compute_error_norm`, then the
    root-mean-square 5th-order error is damped by the 3rd-order one:

    .. math::

        \\text{err} = |h| \\frac{\\|e_5\\|^2}
            {\\sqrt{n (\\|e_5\\|^2 + 0.01 \\|e_3\\|^2)}}
    """
    dtype = get_dtype()
    scale = (jnp.asarray(abs_tol, dtype=dtype)
             + jnp.asarray(rel_tol, dtype=dtype)
             * jnp.maximum(jnp.abs(state_new), jnp.abs(state_old)))
    e5 = jnp.sum(jnp.square(err5 / scale))
    e3 = jnp.sum(jnp.square(err3 / scale))
    denom = e5 + 0.01 * e3
    safe = jnp.where(denom > 0.0, denom, 1.0)
    return jnp.where(denom > 0.0,
                     jnp.abs(h) * e5 / jnp.sqrt(safe * err5.shape[0]),
                     jnp.asarray(0.0, dtype=dtype))


def dop853_dense_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    config: Optional[AdaptiveConfig] = None,
    error_dim: Optional[int] = None,
) -> DenseStepResult:
    """Perform a single adaptive DOP853 step and keep its dense output.

    Same contract as :func:`~ephemjax.integrators.dp54.dp54_dense_step`:
    acceptance is never forced and error control may be restricted to
    the leading ``error_dim`` components.  The ``stages`` field of the
    result holds the ``(7, n)`` interpolation coefficients expected by
    :func:`dop853_interpolate`.

    Args:
        dynamics: Right-hand side ``f(t, x) -> dx/dt``.
        t: Start time of the step.
        state: State at ``t``.
        dt: Requested step, negative to integrate backward.
        config: Step-size control settings, defaults to :class:`AdaptiveConfig`.
        error_dim: Number of leading components under error control.
            ``None`` controls the whole state.  Must be a Python int
            (static under ``jax.jit``).

    Returns:
        DenseStepResult: ``attempts`` counts trial steps, each costing
            :data:`STAGES_PER_ATTEMPT` evaluations; every call also spends
            :data:`DENSE_EVALUATIONS` on the continuous extension.
    """
    if config is None:
        config = AdaptiveConfig()

    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    state = jnp.asarray(state, dtype=dtype)
    dt = jnp.asarray(dt, dtype=dtype)
    n = state.shape[0]
    n_ctrl = n if error_dim is None else error_dim

    # Carry: (h, h_used, attempts, done, accepted, state_out, error_out, stages)
    def cond_fn(carry):
        attempts, done = carry[2], carry[3]
        return (~done) & (attempts < config.max_step_attempts)

    def body_fn(carry):
        h, attempts = carry[0], carry[2]
        state_new, err5, err3, stages = _dop853_trial(dynamics, t, state, h)
        error = dop853_error_norm(
            err5[:n_ctrl], err3[:n_ctrl], h, state_new[:n_ctrl], state[:n_ctrl],
            config.abs_tol, config.rel_tol,
        )

        accepted = error <= 1.0
        at_min_step = jnp.abs(h) <= config.min_step
        h_reduced = compute_next_step_size(
            error, h, ERROR_ORDER, config.safety_factor,
            config.min_scale_factor, config.max_scale_factor,
            config.min_step, config.max_step,
        )
        return (jnp.where(accepted, h, h_reduced), h, attempts + 1,
                accepted | at_min_step, accepted, state_new, error, jnp.stack(stages))

    init_carry = (
        dt,
        dt,
        jnp.asarray(0, dtype=jnp.int32),
        jnp.asarray(False),
        jnp.asarray(False),
        state,
        jnp.asarray(jnp.inf, dtype=dtype),
        jnp.zeros((STAGES_PER_ATTEMPT, n), dtype=dtype),
    )

    (h_retry, h, attempts, _done, accepted,
     state_out, error_out, stage_array) = jax.lax.while_loop(cond_fn, body_fn, init_carry)

    # Continuous extension of the returned step
    stages = [stage_array[i] for i in range(STAGES_PER_ATTEMPT)]
    stages.append(dynamics(t + h, state_out))
    for i in range(13, 16):
        stages.append(dynamics(t + _C[i] * h, state + h * _combine(_A[i], stages)))

    delta = state_out - state
    coefficients = jnp.stack([
        delta,
        h * stages[0] - delta,
        2.0 * delta - h * (stages[12] + stages[0]),
    ] + [h * _combine(row, stages) for row in _D])

    h_grow = compute_next_step_size(
        error_out, h, ERROR_ORDER, config.safety_factor,
        config.min_scale_factor, config.max_scale_factor,
        config.min_step, config.max_step,
    )

    return DenseStepResult(
        state=state_out,
        dt_used=h,
        error_estimate=error_out,
        dt_next=jnp.where(accepted, h_grow, h_retry),
        stages=coefficients,
        attempts=attempts,
        accepted=accepted,
    )


@jax.jit
def dop853_interpolate(
    state: ArrayLike,
    coefficients: ArrayLike,
    dt: ArrayLike,
    theta: ArrayLike,
) -> Array:
    """Evaluate the DOP853 continuous extension inside an accepted step.

    Args:
        state: State at the beginning of the step, shape ``(n,)``.
        coefficients: Interpolation coefficients from
            :func:`dop853_dense_step`, shape ``(7, n)``.
        dt: Step size.  Unused, the coefficients are already scaled by it;
            accepted for a signature shared with ``dp54_interpolate``.
        theta: Normalised position in the step, ``0`` at its start and
            ``1`` at its end.

    Returns:
        jax.Array: Interpolated state of shape ``(n,)``.
    """
    dtype = get_dtype()
    state = jnp.asarray(state, dtype=dtype)
    coefficients = jnp.asarray(coefficients, dtype=dtype)
    theta = jnp.asarray(theta, dtype=dtype)

    # Horner scheme alternating theta and (1 - theta), innermost row last
    y = jnp.zeros_like(state)
    for i in range(INTERPOLATOR_POWER):
        y = (y + coefficients[INTERPOLATOR_POWER - 1 - i]) * (
            theta if i % 2 == 0 else 1.0 - theta
        )
    return state + y


DOP853 = DenseMethod(
    name="dop853",
    dense_step=dop853_dense_step,
    interpolate=dop853_interpolate,
    error_order=ERROR_ORDER,
    stages_per_attempt=STAGES_PER_ATTEMPT,
    dense_evaluations=DENSE_EVALUATIONS,
)
"""Dormand-Prince 8(5,3), the default method of the propagator."""
