import numpy as np

# Steihaug-Toint truncated preconditioned conjugate gradient, adapted from Pymanopt's trust-region solver.
# The trust region is measured in the Riemannian metric norm, so the returned step satisfies ||eta|| <= Delta.
def truncated_conjugate_gradient(manifold, hess, x, fgradx, Delta, theta, kappa, maxinner, preconditioner):
    """
    Approximately minimize the model m(eta) = <fgradx, eta> + 0.5 <eta, H[eta]>
    subject to ||eta|| <= Delta.

    Stops when the preconditioned residual norm sqrt(<r, z>) falls below
    min(kappa, ||g0||^theta) * ||g0|| (||g0|| being the initial preconditioned
    gradient norm), on non-positive curvature or when the boundary is reached
    (both truncated to the boundary), when the model fails to decrease, or
    after maxinner iterations.

    Returns (eta, Heta, number of Hessian-vector products, stop reason).
    """
    inner = manifold.inner_product

    eta = manifold.zero_vector(x)
    Heta = manifold.zero_vector(x)
    r = fgradx
    e_e = 0.0

    # Precondition the residual
    z = preconditioner(x, r)
    z_r = inner(x, z, r)
    if z_r <= 0:
        # Degenerate preconditioner; fall back to the unpreconditioned residual
        preconditioner = lambda x, r: r
        z = r
        z_r = inner(x, r, r)
    norm_r0 = np.sqrt(z_r)
    if norm_r0 == 0:
        return eta, Heta, 0, "ZERO_GRADIENT"
    target = norm_r0 * min(norm_r0**theta, kappa)

    # Initial search direction
    delta = -z
    e_d = 0.0
    d_d = inner(x, delta, delta)

    def model_fun(eta, Heta):
        return inner(x, eta, fgradx) + 0.5 * inner(x, eta, Heta)

    model_value = 0

    # Pre-assume termination because j == end.
    stop_tCG = "MAX_INNER_ITER"
    num_HVPs = 0

    # Begin inner/tCG loop.
    for j in range(int(maxinner)):
        # This call is the computationally intensive step
        Hdelta = hess(x, delta)
        num_HVPs += 1

        # Compute curvature (often called kappa)
        d_Hd = inner(x, delta, Hdelta)

        # Note that if d_Hd == 0, we will exit at the next "if" anyway.
        if d_Hd != 0:
            alpha = z_r / d_Hd
            e_e_new = e_e + 2 * alpha * e_d + alpha**2 * d_d
        else:
            e_e_new = e_e

        # Check against negative curvature and trust-region radius
        # violation. If either condition triggers, we bail out.
        if d_Hd <= 0 or e_e_new >= Delta**2:
            # Positive root of ||eta + tau * delta||^2 = Delta^2
            tau = (
                -e_d + np.sqrt(max(e_d * e_d + d_d * (Delta**2 - e_e), 0))
            ) / d_d

            eta = eta + tau * delta
            Heta = Heta + tau * Hdelta

            if d_Hd <= 0:
                stop_tCG = "NEGATIVE_CURVATURE"
            else:
                stop_tCG = "EXCEEDED_TR"
            break

        # No negative curvature and eta_prop inside TR: accept it.
        new_eta = eta + alpha * delta
        new_Heta = Heta + alpha * Hdelta

        # Verify that the model cost decreased in going from eta to
        # new_eta. If it did not (which can only occur because of
        # numerical errors), then we return the previous eta.
        new_model_value = model_fun(new_eta, new_Heta)
        if new_model_value >= model_value:
            stop_tCG = "MODEL_INCREASED"
            break

        eta = new_eta
        Heta = new_Heta
        model_value = new_model_value

        # Update the residual.
        r = r + alpha * Hdelta

        # Precondition the residual.
        z = preconditioner(x, r)

        # Save the old z'*r.
        zold_rold = z_r
        # Compute new z'*r.
        z_r = inner(x, z, r)

        # Check kappa/theta stopping criterion on the preconditioned residual.
        if np.sqrt(max(z_r, 0)) <= target:
            if kappa < norm_r0**theta:
                stop_tCG = "REACHED_TARGET_LINEAR"
            else:
                stop_tCG = "REACHED_TARGET_SUPERLINEAR"
            break

        # Compute new search direction
        beta = z_r / zold_rold
        delta = -z + beta * delta

        # Re-tangentialize delta to make sure it remains within the tangent
        # space.
        delta = manifold.to_tangent_space(x, delta)

        # Metric inner products needed for the boundary test
        e_e = inner(x, eta, eta)
        e_d = inner(x, eta, delta)
        d_d = inner(x, delta, delta)

    return eta, Heta, num_HVPs, stop_tCG
