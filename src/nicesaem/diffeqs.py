import abc
import numpy as np


class InvalidPKParameterError(ValueError):
    """Raised when PK parameters would make the closed-form model undefined."""


def one_compartment_oral_conc(t, ka, vd, ke, dose=100.0):
    """
    Closed-form concentration of a one-compartment model with first-order
    absorption and first-order elimination after a single oral dose at t=0.

        C(t) = dose*ka / (vd*(ka - ke)) * (exp(-ke*t) - exp(-ka*t))

    All arguments broadcast, so `t` may be a grid and the parameters scalars,
    or all of them per-observation arrays. The function does not guard the
    degenerate case ka == ke, see `check_pk_params`.
    """
    t = np.asarray(t, dtype=np.float64)
    return dose * ka / (vd * (ka - ke)) * (np.exp(-ke * t) - np.exp(-ka * t))


def check_pk_params(ka, vd, ke, ka_ke_tol=1e-8):
    ka = np.asarray(ka, dtype=np.float64)
    vd = np.asarray(vd, dtype=np.float64)
    ke = np.asarray(ke, dtype=np.float64)
    for name, val in (("ka", ka), ("vd", vd), ("ke", ke)):
        if not np.all(np.isfinite(val)):
            raise InvalidPKParameterError(f"`{name}` must be finite, got {val}")
        if np.any(val <= 0):
            raise InvalidPKParameterError(f"`{name}` must be strictly positive, got {val}")
    if np.any(np.abs(ka - ke) <= ka_ke_tol * np.maximum(ka, ke)):
        raise InvalidPKParameterError(
            "ka and ke are equal (within tolerance); the closed-form "
            "one-compartment absorption model is undefined for ka == ke"
        )
    return ka, vd, ke


def valid_pk_params_mask(ka, vd, ke, ka_ke_tol=1e-8):
    """Elementwise version of `check_pk_params` that returns a mask instead of raising."""
    ka = np.asarray(ka, dtype=np.float64)
    vd = np.asarray(vd, dtype=np.float64)
    ke = np.asarray(ke, dtype=np.float64)
    finite = np.isfinite(ka) & np.isfinite(vd) & np.isfinite(ke)
    positive = (ka > 0) & (vd > 0) & (ke > 0)
    distinct = np.abs(ka - ke) > ka_ke_tol * np.maximum(ka, ke)
    return finite & positive & distinct


class PKBaseODE(abc.ABC):
    """
    Abstract Base Class for Pharmacokinetic models.

    Subclasses must implement the `ode` method, which defines the differential
    equations for the masses in each compartment, the `mass_to_depvar` method,
    which converts the predicted mass in the observed compartment to the
    measured dependent variable, and `closed_form_depvar`, which evaluates the
    analytic solution for a single dose at t=0.

    Methods:
        ode(t, y, *params): Defines the ODE system.
        mass_to_depvar(pred_mass_central, *params): Converts mass to concentration.
        closed_form_depvar(t, dose, *params): Analytic concentration.
    """
    param_names = ()

    def __init__(self, ):
        pass

    @abc.abstractmethod
    def ode(self, t, y, *params):
        """
        Defines the system of ordinary differential equations.

        Args:
            t (float): Current time point.
            y (list or np.ndarray): Array of current state variables
                (masses or amounts in compartments).
            *params: Sequence of model parameters required by the ODEs.
                Order must match `param_names`.

        Returns:
            list: List of derivatives [dy/dt] in the order of `y`.
        """
        pass

    @abc.abstractmethod
    def mass_to_depvar(self, pred_mass_central, *params):
        """
        Converts the predicted mass in the central compartment to the
        dependent variable (usually concentration).
        """
        pass

    @abc.abstractmethod
    def closed_form_depvar(self, t, dose, *params):
        """
        Analytic dependent variable after a single dose given at t=0.

        Args:
            t (float or np.ndarray): Time(s) since dose.
            dose (float or np.ndarray): Dose amount.
            *params: Model parameters, order must match `param_names`.
        """
        pass

    def initial_state(self, dose):
        return [0.0, dose]


class OneCompartmentAbsorptionKe(PKBaseODE):
    """
    One-compartment model with first-order absorption (Gut -> Central).
    Parameterized by Ka, Apparent Volume (V/F) and Elimination Rate Constant (Ke).

    Represents oral administration where the drug enters the central
    compartment via a first-order absorption process from a depot and leaves
    it by first-order elimination.

    Key Model Assumptions:
        - Single dose at t=0, entirely in the depot at that time.
        - First-order absorption process.
        - Single, well-stirred central compartment.
        - First-order elimination process (parameterized by Ke).
        - Constant parameters over time and concentration range.

    States (y):
        y[0]: Mass in Central Compartment (amount)
        y[1]: Mass in Gut/Absorption Compartment (amount)

    Parameters (order of *params):
        ka (float): First-order absorption rate constant (1/time).
        vd (float): Apparent volume of distribution (V/F) (volume).
        ke (float): First-order elimination rate constant (1/time).

    Closed form:
        C(t) = Dose*ka / (V*(ka - ke)) * (exp(-ke*t) - exp(-ka*t))
        undefined for ka == ke, which callers reject before evaluation.

    Common Derived Parameters:
        - Half-life (terminal): t1/2 = ln(2) / ke (ln(2)/ka under flip-flop kinetics).
        - Apparent Clearance (CL/F): ke * V.
        - AUC_inf = Dose / (ke * V).
        - Tmax = ln(ka/ke) / (ka - ke).

    Initial Parameter Estimates (for optimization):
        - ka: Related to Tmax. Guess ~1/Tmax.
        - ke: terminal slope of ln(C) vs t (NCA lambda_z).
        - vd: (Dose / AUC_inf) / ke.
    """
    param_names = ("ka", "vd", "ke")

    def __init__(self, ):
        pass

    def ode(self, t, y, ka, vd, ke):
        central_mass, gut_mass = y
        dCMdt = ka * gut_mass - ke * central_mass
        dGdt = -ka * gut_mass
        return [dCMdt, dGdt]

    def mass_to_depvar(self, pred_mass_central, ka, vd, ke):
        """Converts central compartment mass to concentration."""
        return pred_mass_central / vd

    def closed_form_depvar(self, t, dose, ka, vd, ke):
        return one_compartment_oral_conc(t, ka, vd, ke, dose=dose)

    @staticmethod
    def tmax(ka, ke):
        return np.log(ka / ke) / (ka - ke)
